"""Rule matching: condition groups, performer scope and throttling."""
