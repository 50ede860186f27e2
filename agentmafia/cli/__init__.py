"""
Agent Mafia command-line interface.
"""
