"""Rooms, participants and messages."""
