"""External collaborators used by processors."""
