"""User alert and notification preferences."""
