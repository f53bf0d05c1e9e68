import pytest

from guildkeeper.core.storage.keys import (
    KeyKind,
    afk_key,
    birthdays_key,
    build_key,
    cache_key,
    economy_key,
    giveaways_key,
    guild_config_key,
    join_to_create_key,
    leveling_config_key,
    parse_key,
    temp_key,
    ticket_key,
    user_level_key,
    welcome_key,
)


@pytest.mark.parametrize(
    "key, kind, fields",
    [
        ("guild:1:config", KeyKind.GUILD_CONFIG, {"guild_id": "1"}),
        ("guild:1:birthdays", KeyKind.GUILD_BIRTHDAYS, {"guild_id": "1"}),
        ("guild:1:giveaways", KeyKind.GUILD_GIVEAWAYS, {"guild_id": "1"}),
        ("guild:1:welcome", KeyKind.WELCOME_CONFIG, {"guild_id": "1"}),
        ("guild:1:leveling:config", KeyKind.LEVELING_CONFIG, {"guild_id": "1"}),
        ("guild:1:leveling:users:7", KeyKind.USER_LEVEL, {"guild_id": "1", "user_id": "7"}),
        ("guild:1:economy:7", KeyKind.ECONOMY, {"guild_id": "1", "user_id": "7"}),
        ("guild:1:afk:7", KeyKind.AFK_STATUS, {"guild_id": "1", "user_id": "7"}),
        ("guild:1:ticket:99", KeyKind.TICKET, {"guild_id": "1", "channel_id": "99"}),
        ("temp:cooldown:5", KeyKind.TEMP, {}),
        ("cache:leaderboard", KeyKind.CACHE, {}),
    ],
)
def test_known_shapes_are_classified(key, kind, fields):
    desc = parse_key(key)
    assert desc.kind == kind
    assert desc.full_key == key
    for name, value in fields.items():
        assert getattr(desc, name) == value


@pytest.mark.parametrize(
    "key",
    [
        "",
        ":",
        "guild",
        "guild:",
        "guild::config",
        "guild:1",
        "guild:1:leveling",
        "guild:1:leveling:users:",
        "guild:1:economy",
        "guild:1:config:extra",
        "guild:1:jointocreate",
        "something:else:entirely",
        "temp",
        "\x00:guild:1:config",
        "guild:1:afk:7:8",
        ":".join(["guild"] * 12),
    ],
)
def test_malformed_or_unknown_keys_fall_back_to_temp(key):
    desc = parse_key(key)
    assert desc.kind == KeyKind.TEMP
    assert desc.full_key == key


def test_empty_segment_after_prefix_is_still_temp_or_cache():
    assert parse_key("temp:").kind == KeyKind.TEMP
    assert parse_key("cache:").kind == KeyKind.CACHE


def test_non_string_key_is_a_type_error():
    with pytest.raises(TypeError):
        parse_key(123)


def test_builders_round_trip_through_the_translator():
    assert parse_key(user_level_key(1, 2)).kind == KeyKind.USER_LEVEL
    assert parse_key(economy_key(1, 2)).user_id == "2"
    assert parse_key(ticket_key(1, 3)).channel_id == "3"
    assert parse_key(join_to_create_key(1)).kind == KeyKind.TEMP


def test_build_key_inverts_parse_key():
    assert build_key(KeyKind.USER_LEVEL, guild_id="1", user_id="2") == "guild:1:leveling:users:2"
    assert build_key(KeyKind.GUILD_CONFIG, guild_id="5") == "guild:5:config"
    with pytest.raises(ValueError):
        build_key(KeyKind.TEMP)


@pytest.mark.parametrize(
    "built, kind",
    [
        (guild_config_key(1), KeyKind.GUILD_CONFIG),
        (birthdays_key(1), KeyKind.GUILD_BIRTHDAYS),
        (giveaways_key(1), KeyKind.GUILD_GIVEAWAYS),
        (welcome_key(1), KeyKind.WELCOME_CONFIG),
        (leveling_config_key(1), KeyKind.LEVELING_CONFIG),
        (afk_key(1, 2), KeyKind.AFK_STATUS),
        (temp_key("cooldown", 1, 2), KeyKind.TEMP),
        (cache_key("leaderboard", 1), KeyKind.CACHE),
    ],
)
def test_every_builder_lands_on_its_kind(built, kind):
    assert parse_key(built).kind == kind
