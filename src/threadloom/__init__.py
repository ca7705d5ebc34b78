"""Threadloom: branching chat history and the context pipeline built on top of it."""

__version__ = "0.4.0"
