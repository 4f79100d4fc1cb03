"""Two-way Google Calendar synchronization engine for AeroTodo."""

__version__ = "0.4.0"
