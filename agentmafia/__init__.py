"""
Agent Mafia
===========

Orchestration engine for a hierarchy of cooperating LLM agents
(underboss, capos, soldiers) that delegate work downward, report results
upward, and escalate hard decisions to a human boss.
"""

__version__ = "0.1.0"
