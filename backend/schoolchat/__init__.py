"""SchoolChat: real-time messaging core for the school-management app."""

__version__ = "0.1.0"
