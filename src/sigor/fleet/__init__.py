"""Organizations, bases, vehicles, profiles, and crew assignments."""
