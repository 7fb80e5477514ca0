"""In-process implementations of the collaborator protocols."""
