"""Local cache of user profiles owned by the identity system."""
