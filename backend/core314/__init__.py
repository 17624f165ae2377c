"""
Core314 Automation Engine
=========================

Orchestration flows, execution queue, executor and escalation handling.
"""

__version__ = "0.1.0"
