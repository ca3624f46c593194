"""
Remote control engine for Claude Code.
Runs the agent under a pseudo-terminal, streams it to connected phones and
notifies when it is waiting for input.
"""

__version__ = "0.3.0"
