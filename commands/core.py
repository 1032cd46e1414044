"""
Home Bridge - Core Commands
Operator commands: dialogue, bridge_status.
"""

import discord
from discord import app_commands

from constants import USER_FRIENDLY_ERRORS
from errors import AlreadyActive, BackendUnavailable, InvalidArgument, NotFound
import logger as log


async def is_owner(interaction: discord.Interaction, admin_id: int = None) -> bool:
    """Check if the user is the configured admin or the application owner."""
    if admin_id is not None:
        return interaction.user.id == admin_id
    app_info = await interaction.client.application_info()
    if app_info.team:
        return interaction.user.id in [m.id for m in app_info.team.members]
    return interaction.user.id == app_info.owner.id


def format_status(bridge) -> str:
    channels = bridge.text_channels
    users = sum(len(c.users) for c in channels)
    lines = [
        f"**{bridge.name}**: {'🟢 running' if bridge.is_running else '🔴 stopped'}",
        f"Channels: {len(channels)}, known users: {users}",
    ]
    if bridge.dialogue.is_active:
        lines.append(f"Dialogue: {bridge.dialogue.remaining} messages left")
    lines.append(f"Rate limiter level: {bridge.orchestrator.rate_limiter.level:.1f}/{bridge.orchestrator.rate_limiter.capacity}")
    return "\n".join(lines)


def setup_core_commands(platform) -> None:
    """Register operator commands."""
    tree = platform.tree

    @tree.command(name="dialogue", description="Start a conversation with someone in this channel")
    @app_commands.describe(user="Who to talk to", count="How many of the next messages to answer")
    async def cmd_dialogue(interaction: discord.Interaction, user: discord.User,
                           count: app_commands.Range[int, 1, 50] = 5) -> None:
        if not await is_owner(interaction, platform.admin_id):
            await interaction.response.send_message(USER_FRIENDLY_ERRORS["not_owner"], ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        bridge = platform.bridge
        channel = bridge.cache.get_channel(interaction.channel_id)
        if channel is not None and channel.get_user(user.id) is None:
            # Operators may name someone who has not spoken since the last resync
            channel.add_user(user.id, getattr(user, "display_name", None) or user.name)

        try:
            sent = await bridge.start_proactive_dialogue(interaction.channel_id, user.id, count)
        except AlreadyActive:
            await interaction.followup.send(USER_FRIENDLY_ERRORS["already_active"], ephemeral=True)
            return
        except NotFound:
            await interaction.followup.send(USER_FRIENDLY_ERRORS["not_found"], ephemeral=True)
            return
        except InvalidArgument:
            await interaction.followup.send(USER_FRIENDLY_ERRORS["invalid"], ephemeral=True)
            return
        except BackendUnavailable:
            await interaction.followup.send(USER_FRIENDLY_ERRORS["unavailable"], ephemeral=True)
            return

        log.info(f"{interaction.user} started a dialogue with {user} ({count})", platform.name)
        note = "" if sent else " (opening message could not be sent)"
        await interaction.followup.send(f"✅ Dialogue started, {count} messages{note}", ephemeral=True)

    @tree.command(name="bridge_status", description="Show the bridge status")
    async def cmd_status(interaction: discord.Interaction) -> None:
        if not await is_owner(interaction, platform.admin_id):
            await interaction.response.send_message(USER_FRIENDLY_ERRORS["not_owner"], ephemeral=True)
            return
        await interaction.response.send_message(format_status(platform.bridge), ephemeral=True)
