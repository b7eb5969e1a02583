"""Client-side view-model controllers for the chat list and chat detail."""
