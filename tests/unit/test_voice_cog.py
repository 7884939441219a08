"""Unit tests for the voice cog's command plumbing, using mocked py-cord objects."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from cogs.voice import SHUTTING_DOWN_REPLY, Voice
from soundbot.services.voice_session.manager import Replies


@pytest.fixture
def voice_cog(services_manager, mock_discord_bot) -> Voice:
    context = services_manager.context
    context.set_bot(mock_discord_bot)
    return Voice(context)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_find_user_vc(voice_cog, mock_discord_user_in_voice, mock_voice_channel):
    assert voice_cog.find_user_vc(mock_discord_user_in_voice) is mock_voice_channel


@pytest.mark.unit
@pytest.mark.asyncio
async def test_find_user_vc_when_not_in_voice(voice_cog, mock_discord_context):
    assert voice_cog.find_user_vc(mock_discord_context) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_join_replies_through_followup(voice_cog, mock_discord_user_in_voice):
    ctx = mock_discord_user_in_voice

    await voice_cog.join.callback(voice_cog, ctx)

    ctx.defer.assert_awaited_once()
    ctx.followup.send.assert_awaited_once_with(Replies.JOINED)
    await voice_cog.services.voice_session_manager.on_close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_leave_without_session(voice_cog, mock_discord_context):
    await voice_cog.leave.callback(voice_cog, mock_discord_context)

    mock_discord_context.followup.send.assert_awaited_once_with(Replies.NOT_CONNECTED)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_commands_refused_during_shutdown(voice_cog, mock_discord_user_in_voice):
    voice_cog.context.mark_shutdown_started()

    await voice_cog.record.callback(voice_cog, mock_discord_user_in_voice)

    mock_discord_user_in_voice.followup.send.assert_awaited_once_with(SHUTTING_DOWN_REPLY)
    assert voice_cog.services.voice_session_manager.find_session(111222333) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_bot_removed_from_voice_tears_session_down(voice_cog, mock_discord_bot):
    manager = voice_cog.services.voice_session_manager
    manager.handle_forced_disconnect = AsyncMock()

    member = MagicMock()
    member.id = mock_discord_bot.user.id
    member.guild.id = 111222333
    before, after = MagicMock(), MagicMock()
    after.channel = None

    await voice_cog.on_voice_state_update(member, before, after)

    manager.handle_forced_disconnect.assert_awaited_once_with(111222333, before.channel.id)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_other_members_leaving_voice_are_ignored(voice_cog):
    manager = voice_cog.services.voice_session_manager
    manager.handle_forced_disconnect = AsyncMock()

    member = MagicMock()
    member.id = 42
    before, after = MagicMock(), MagicMock()
    after.channel = None

    await voice_cog.on_voice_state_update(member, before, after)

    manager.handle_forced_disconnect.assert_not_awaited()
