"""
User preference store for the task monitor.

Holds the handful of UI preferences that affect task queries: hidden task ids
(a deleted task disappears from every list before the backend confirms),
collapsed task groups, and the defaults used when starting a new run.

State lives in memory and is persisted best-effort to Redis. Redis being down
only costs persistence; every operation keeps working on the in-memory copy.
"""

import json
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from taskmonitor.configs.config import config


class RunDefaults(BaseModel):
    """Defaults applied to new runs started from the monitor."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    voice_language: str = "english"
    subtitle_language: str | None = None
    transcript_language: str | None = None
    video_resolution: Literal["sd", "hd", "fullhd"] = "hd"


class PreferenceStore:
    """Hidden tasks, collapsed groups and run defaults, mirrored to Redis"""

    def __init__(self, redis_client: Any | None = None, key_prefix: str | None = None) -> None:
        if redis_client is None:
            from taskmonitor.configs.redis_config import RedisConfig

            redis_client = RedisConfig.get_redis_client()
        self.redis_client = redis_client
        self.key_prefix = key_prefix or config.preferences_key_prefix
        self._hidden: set[str] = set()
        self._collapsed: set[str] = set()
        self._run_defaults = RunDefaults()

    def _get_key(self, name: str) -> str:
        return f"{self.key_prefix}:{name}"

    async def load(self) -> None:
        """Replace the in-memory state with what Redis holds."""
        try:
            hidden = await self.redis_client.smembers(self._get_key("hidden"))
            collapsed = await self.redis_client.smembers(self._get_key("collapsed"))
            raw_defaults = await self.redis_client.get(self._get_key("run_defaults"))
        except Exception as e:
            from taskmonitor.configs.redis_config import RedisConfig

            logger.warning(
                f"Could not load preferences from Redis {RedisConfig.get_connection_info()}: {e}"
            )
            return

        self._hidden = {str(item) for item in hidden or ()}
        self._collapsed = {str(item) for item in collapsed or ()}
        if raw_defaults:
            try:
                self._run_defaults = RunDefaults(**json.loads(raw_defaults))
            except (ValueError, TypeError, ValidationError) as e:
                logger.warning(f"Ignoring malformed run defaults in Redis: {e}")
        logger.debug(
            f"Loaded preferences: {len(self._hidden)} hidden, {len(self._collapsed)} collapsed"
        )

    # Hidden tasks
    @property
    def hidden_tasks(self) -> frozenset[str]:
        return frozenset(self._hidden)

    def is_hidden(self, task_id: str) -> bool:
        return task_id in self._hidden

    async def hide_task(self, task_id: str) -> None:
        self._hidden.add(task_id)
        await self._persist("sadd", self._get_key("hidden"), task_id)

    async def unhide_task(self, task_id: str) -> None:
        self._hidden.discard(task_id)
        await self._persist("srem", self._get_key("hidden"), task_id)

    # Collapsed groups
    def is_collapsed(self, group: str) -> bool:
        return group in self._collapsed

    async def toggle_group(self, group: str) -> bool:
        """Flip a group's collapsed flag; returns the new state."""
        if group in self._collapsed:
            self._collapsed.discard(group)
            await self._persist("srem", self._get_key("collapsed"), group)
            return False
        self._collapsed.add(group)
        await self._persist("sadd", self._get_key("collapsed"), group)
        return True

    # Run defaults
    @property
    def run_defaults(self) -> RunDefaults:
        return self._run_defaults

    async def set_run_defaults(self, **changes: Any) -> RunDefaults:
        """Merge ``changes`` into the run defaults (unknown keys rejected)."""
        updated = RunDefaults(**{**self._run_defaults.model_dump(), **changes})
        self._run_defaults = updated
        await self._persist("set", self._get_key("run_defaults"), updated.model_dump_json())
        return updated

    async def reset_run_defaults(self) -> RunDefaults:
        self._run_defaults = RunDefaults()
        await self._persist("delete", self._get_key("run_defaults"))
        return self._run_defaults

    async def _persist(self, command: str, *args: Any) -> None:
        try:
            await getattr(self.redis_client, command)(*args)
        except Exception as e:
            logger.warning(f"Failed to persist preference ({command} {args[0]}): {e}")


# Global preference store instance
preference_store = PreferenceStore()
