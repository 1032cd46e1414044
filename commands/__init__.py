"""
Home Bridge - Commands Package
Discord slash commands for the bot operator.
"""

from .core import setup_core_commands


def setup_all_commands(platform):
    """Register all commands on a Discord platform's command tree."""
    setup_core_commands(platform)
