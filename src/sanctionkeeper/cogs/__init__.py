"""
Discord cogs: slash commands and the scheduler lifecycle listener.
"""
