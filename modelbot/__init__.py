"""Model nations chat bot back end."""
