"""Conversation and viewing-appointment coordination for the QuickRoom marketplace."""
