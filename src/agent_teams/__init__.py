"""Agent Teams -- coordinate teammates through file-backed mailboxes."""

__version__ = "0.4.0"
