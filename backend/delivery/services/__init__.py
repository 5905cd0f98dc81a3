"""Domain services for the delivery lifecycle."""
