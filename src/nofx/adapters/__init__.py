"""Worker-channel providers."""
