import json
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from taskmonitor.core.preferences import PreferenceStore, RunDefaults


def make_store(redis_client=None):
    return PreferenceStore(redis_client=redis_client or AsyncMock(), key_prefix="tm:prefs")


@pytest.mark.asyncio
async def test_load_reads_sets_and_run_defaults() -> None:
    redis_client = AsyncMock()
    redis_client.smembers = AsyncMock(side_effect=[{"t1", "t2"}, {"failed"}])
    redis_client.get = AsyncMock(
        return_value=json.dumps({"voice_language": "japanese", "video_resolution": "sd"})
    )
    store = make_store(redis_client)

    await store.load()

    assert store.hidden_tasks == frozenset({"t1", "t2"})
    assert store.is_collapsed("failed")
    assert store.run_defaults.voice_language == "japanese"
    assert store.run_defaults.video_resolution == "sd"
    redis_client.get.assert_awaited_once_with("tm:prefs:run_defaults")


@pytest.mark.asyncio
async def test_load_survives_redis_outage() -> None:
    redis_client = AsyncMock()
    redis_client.smembers = AsyncMock(side_effect=ConnectionError("redis down"))
    store = make_store(redis_client)
    await store.hide_task("t1")

    await store.load()

    assert store.is_hidden("t1")
    assert store.run_defaults == RunDefaults()


@pytest.mark.asyncio
async def test_load_ignores_malformed_run_defaults() -> None:
    redis_client = AsyncMock()
    redis_client.smembers = AsyncMock(return_value=set())
    redis_client.get = AsyncMock(return_value="{not json")
    store = make_store(redis_client)

    await store.load()

    assert store.run_defaults == RunDefaults()


@pytest.mark.asyncio
async def test_hide_and_unhide_persist() -> None:
    store = make_store()

    await store.hide_task("t1")
    assert store.is_hidden("t1")
    store.redis_client.sadd.assert_awaited_once_with("tm:prefs:hidden", "t1")

    await store.unhide_task("t1")
    assert not store.is_hidden("t1")
    store.redis_client.srem.assert_awaited_once_with("tm:prefs:hidden", "t1")


@pytest.mark.asyncio
async def test_persistence_failures_do_not_raise() -> None:
    redis_client = AsyncMock()
    redis_client.sadd = AsyncMock(side_effect=ConnectionError("redis down"))
    store = make_store(redis_client)

    await store.hide_task("t1")

    assert store.is_hidden("t1")


@pytest.mark.asyncio
async def test_toggle_group_flips_state() -> None:
    store = make_store()

    assert await store.toggle_group("completed") is True
    assert store.is_collapsed("completed")
    assert await store.toggle_group("completed") is False
    assert not store.is_collapsed("completed")


@pytest.mark.asyncio
async def test_set_run_defaults_merges_and_persists() -> None:
    store = make_store()

    updated = await store.set_run_defaults(subtitle_language="french")

    assert updated.voice_language == "english"
    assert updated.subtitle_language == "french"
    key, raw = store.redis_client.set.await_args.args
    assert key == "tm:prefs:run_defaults"
    assert json.loads(raw)["subtitle_language"] == "french"


@pytest.mark.asyncio
async def test_set_run_defaults_rejects_unknown_fields() -> None:
    store = make_store()

    with pytest.raises(ValidationError):
        await store.set_run_defaults(video_resolution="4k")
    with pytest.raises(ValidationError):
        await store.set_run_defaults(speed=2)

    assert store.run_defaults == RunDefaults()


@pytest.mark.asyncio
async def test_reset_run_defaults() -> None:
    store = make_store()
    await store.set_run_defaults(voice_language="korean")

    defaults = await store.reset_run_defaults()

    assert defaults == RunDefaults()
    store.redis_client.delete.assert_awaited_once_with("tm:prefs:run_defaults")
