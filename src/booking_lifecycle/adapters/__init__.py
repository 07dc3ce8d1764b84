"""External collaborator interfaces and their in-memory implementations."""
