"""
Effect appliers: the code that actually changes roles on the platform.
"""
