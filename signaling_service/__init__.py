"""
Matchmaking and signal relay service for one-to-one voice sessions
"""
