"""
StoryForge
Blueprint registry.
"""
