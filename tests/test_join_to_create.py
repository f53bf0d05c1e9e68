import asyncio

import pytest

from guildkeeper.core.errors import BotError, ErrorType
from guildkeeper.core.join_to_create import (
    DEFAULT_BITRATE,
    DEFAULT_NAME_TEMPLATE,
    JoinToCreateConfig,
    JoinToCreateConfigService,
    TriggerOptions,
    clamp_bitrate,
    clamp_user_limit,
    format_channel_name,
    validate_bitrate,
    validate_name_template,
    validate_user_limit,
)
from guildkeeper.core.storage import MemoryStore, Storage
from guildkeeper.core.storage.keys import join_to_create_key


@pytest.fixture
def storage(clock):
    return Storage(primary=MemoryStore(clock=clock), clock=clock)


@pytest.fixture
def service(storage):
    return JoinToCreateConfigService(storage)


# ----------------------------------------------------------------------------
# validation
# ----------------------------------------------------------------------------

@pytest.mark.parametrize("template", ["{username}'s Room", "Lobby {guildName}", "  {display_name} vc  "])
def test_valid_templates(template):
    assert validate_name_template(template) == template.strip()


@pytest.mark.parametrize("template", ["", "   ", None, 42, "@everyone", "#general", "a:b", "`x`", "x" * 101, "{nope}"])
def test_invalid_templates(template):
    with pytest.raises(BotError) as exc_info:
        validate_name_template(template)
    assert exc_info.value.error_type == ErrorType.VALIDATION


def test_template_strips_invisible_characters():
    assert validate_name_template("Room\u200b\x07") == "Room"


@pytest.mark.parametrize("bitrate", [8000, 64000, 384000, "96000"])
def test_valid_bitrates(bitrate):
    assert validate_bitrate(bitrate) == int(bitrate)


@pytest.mark.parametrize("bitrate", [7999, 384001, -1, "fast", None])
def test_invalid_bitrates(bitrate):
    with pytest.raises(BotError):
        validate_bitrate(bitrate)


def test_user_limit_bounds():
    assert validate_user_limit(0) == 0
    assert validate_user_limit(99) == 99
    with pytest.raises(BotError):
        validate_user_limit(100)
    with pytest.raises(BotError):
        validate_user_limit(-1)


def test_clamping():
    assert clamp_bitrate(1) == 8000
    assert clamp_bitrate(10**9) == 384000
    assert clamp_bitrate("junk") == DEFAULT_BITRATE
    assert clamp_user_limit(500) == 99
    assert clamp_user_limit(None) == 0


# ----------------------------------------------------------------------------
# channel names
# ----------------------------------------------------------------------------

def test_format_substitutes_variables():
    assert format_channel_name("{username}'s Room", username="alice") == "alice's Room"
    assert format_channel_name("{displayName} in {guildName}", display_name="Al", guild_name="Cafe") == "Al in Cafe"


def test_format_strips_forbidden_characters_from_values():
    assert format_channel_name("{username}'s Room", username="al@ice#1") == "alice1's Room"


def test_format_uses_fallbacks_for_blank_values():
    assert format_channel_name("{username}'s Room", username="  ") == "User's Room"
    assert format_channel_name("{username}'s Room") == "User's Room"


def test_format_truncates_long_values():
    name = format_channel_name("{username}", username="x" * 80)
    assert name == "x" * 32


def test_format_never_exceeds_channel_name_limit():
    template = "y" * 90 + "{username}"
    assert len(format_channel_name(template, username="z" * 32)) == 100


def test_invalid_stored_template_falls_back_to_default():
    assert format_channel_name("@here {username}", username="bob") == "bob's Room"
    assert format_channel_name(None, username="bob") == "bob's Room"


# ----------------------------------------------------------------------------
# config document
# ----------------------------------------------------------------------------

def test_config_document_round_trip():
    config = JoinToCreateConfig(enabled=True, trigger_channels={10}, category_id=5)
    config.channel_options[10] = TriggerOptions(name_template="{username}", user_limit=3, bitrate=96000)
    restored = JoinToCreateConfig.from_dict(config.to_dict())
    assert restored == config
    assert config.to_dict()["triggerChannels"] == ["10"]


def test_config_from_garbage_is_default():
    assert JoinToCreateConfig.from_dict(None) == JoinToCreateConfig()
    config = JoinToCreateConfig.from_dict({
        "enabled": True,
        "triggerChannels": ["10", "not-a-number"],
        "temporaryChannels": {"20": {"ownerId": "1", "triggerChannelId": "10"}, "21": {"ownerId": "x"}},
    })
    assert config.trigger_channels == {10}
    assert list(config.temporary_channels) == [20]


def test_options_for_falls_back_to_guild_defaults():
    config = JoinToCreateConfig(trigger_channels={10}, category_id=5, user_limit=4)
    config.channel_options[10] = TriggerOptions(bitrate=128000)
    resolved = config.options_for(10)
    assert resolved.bitrate == 128000
    assert resolved.user_limit == 4
    assert resolved.category_id == 5
    assert resolved.name_template == DEFAULT_NAME_TEMPLATE


def test_drop_category_disables_feature():
    config = JoinToCreateConfig(enabled=True, trigger_channels={10})
    config.channel_options[10] = TriggerOptions(category_id=5)
    assert config.drop_category(5) is True
    assert config.enabled is False
    assert config.channel_options[10].category_id is None
    assert config.drop_category(5) is False


# ----------------------------------------------------------------------------
# service
# ----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_initialize_trigger(service, storage):
    config = await service.initialize_trigger(1, 10, name_template="{username} vc", bitrate=96000, category_id=5)
    assert config.enabled
    stored = await storage.get(join_to_create_key(1))
    assert stored["triggerChannels"] == ["10"]
    assert stored["channelOptions"]["10"]["nameTemplate"] == "{username} vc"
    assert (await service.get_config(1)).options_for(10).bitrate == 96000


@pytest.mark.asyncio
async def test_only_one_trigger_per_guild(service):
    await service.initialize_trigger(1, 10)
    with pytest.raises(BotError):
        await service.initialize_trigger(1, 10)
    with pytest.raises(BotError):
        await service.initialize_trigger(1, 11)
    # other guilds are independent
    await service.initialize_trigger(2, 11)


@pytest.mark.asyncio
async def test_initialize_validates_before_writing(service, storage):
    with pytest.raises(BotError):
        await service.initialize_trigger(1, 10, bitrate=1)
    assert await storage.get(join_to_create_key(1)) is None


@pytest.mark.asyncio
async def test_update_trigger_options(service):
    await service.initialize_trigger(1, 10)
    opts = await service.update_trigger_options(1, 10, user_limit=5, category_id=None)
    assert opts.user_limit == 5
    assert (await service.get_config(1)).options_for(10).user_limit == 5
    with pytest.raises(BotError):
        await service.update_trigger_options(1, 99, user_limit=5)
    with pytest.raises(BotError):
        await service.update_trigger_options(1, 10, name_template="@everyone")


@pytest.mark.asyncio
async def test_remove_last_trigger_deletes_document(service, storage):
    await service.initialize_trigger(1, 10)
    await service.remove_trigger(1, 10)
    assert await storage.exists(join_to_create_key(1)) is False
    with pytest.raises(BotError):
        await service.remove_trigger(1, 10)


@pytest.mark.asyncio
async def test_removed_trigger_keeps_spawned_channels_tracked(service, storage):
    await service.initialize_trigger(1, 10)
    await service.register_temporary_channel(1, 20, owner_id=7, trigger_channel_id=10)

    config = await service.remove_trigger(1, 10)

    assert config.enabled is False
    assert [c.channel_id for c in await service.list_temporary_channels(1)] == [20]
    assert await service.unregister_temporary_channel(1, 20) is True
    assert await storage.exists(join_to_create_key(1)) is False


@pytest.mark.asyncio
async def test_config_update_re_enables_after_category_loss(service):
    await service.initialize_trigger(1, 10, category_id=5)
    config = await service.get_config(1)
    config.drop_category(5)
    await service.save_config(1, config)
    assert (await service.get_config(1)).enabled is False

    await service.update_trigger_options(1, 10, category_id=6)

    config = await service.get_config(1)
    assert config.enabled is True
    assert config.options_for(10).category_id == 6


@pytest.mark.asyncio
async def test_concurrent_registrations_are_all_kept(yielding_storage):
    service = JoinToCreateConfigService(yielding_storage)
    await service.initialize_trigger(1, 10)

    await asyncio.gather(
        service.register_temporary_channel(1, 20, owner_id=7, trigger_channel_id=10),
        service.register_temporary_channel(1, 21, owner_id=8, trigger_channel_id=10),
        service.register_temporary_channel(1, 22, owner_id=9, trigger_channel_id=10),
    )
    assert sorted(c.channel_id for c in await service.list_temporary_channels(1)) == [20, 21, 22]

    await asyncio.gather(
        service.transfer_ownership(1, 20, 8),
        service.unregister_temporary_channel(1, 21),
    )
    config = await service.get_config(1)
    assert sorted(config.temporary_channels) == [20, 22]
    assert config.temporary_channels[20].owner_id == 8


@pytest.mark.asyncio
async def test_temporary_channel_registry(service):
    await service.initialize_trigger(1, 10)
    record = await service.register_temporary_channel(1, 20, owner_id=7, trigger_channel_id=10)
    assert record.owner_id == 7
    assert (await service.get_temporary_channel(1, 20)).trigger_channel_id == 10

    moved = await service.transfer_ownership(1, 20, 8)
    assert moved.owner_id == 8
    assert (await service.get_config(1)).owned_channel(8).channel_id == 20
    assert await service.transfer_ownership(1, 99, 8) is None

    assert [c.channel_id for c in await service.list_temporary_channels(1)] == [20]
    assert await service.unregister_temporary_channel(1, 20) is True
    assert await service.unregister_temporary_channel(1, 20) is False
    assert await service.get_temporary_channel(1, 20) is None
