"""External collaborator services for the relay worker."""
