"""
Agent Mafia Web Interface
=========================

REST API and server-sent activity stream over the orchestrator.
"""
