"""Role/preset dispatch.

Generation parameters for a story live in one dedicated preset named
`Story:<title>`. Applying a role rebuilds that preset from three layers:

    base preset  →  role defaults  →  checkpoint overrides

and hands the merged values to a `PresetSink`, the host's explicit write API.
The sink is called through an `EffectRunner`, so it may be sync or async.
Values are deep-copied so neither the story nor the sink can mutate the other.
"""

from __future__ import annotations

import copy
import logging
import unicodedata
from collections.abc import Mapping
from typing import Any, Protocol

from storyline.effects import EffectRunner
from storyline.story import ARBITER_ROLE, Story

logger = logging.getLogger(__name__)

PRESET_PREFIX = "Story:"


class PresetSink(Protocol):
    def apply_preset(self, name: str, values: dict[str, Any], label: str) -> Any: ...


class LoggingPresetSink:
    def apply_preset(self, name: str, values: dict[str, Any], label: str) -> None:
        logger.info("preset %s applied (%s): keys=%s", name, label, sorted(values))


def normalize_name(value: str | None) -> str:
    if not value:
        return ""
    return unicodedata.normalize("NFKC", value).strip().casefold()


class RolePresetDispatcher:
    def __init__(
        self,
        sink: PresetSink,
        story_title: str,
        base: Mapping[str, Any] | None = None,
        role_defaults: Mapping[str, Mapping[str, Any]] | None = None,
        roles: Mapping[str, str] | None = None,
        runner: EffectRunner | None = None,
    ) -> None:
        self._sink = sink
        self._runner = runner or EffectRunner()
        self._title = story_title
        self._base = copy.deepcopy(dict(base or {}))
        self._role_defaults = copy.deepcopy({k: dict(v) for k, v in (role_defaults or {}).items()})
        self._names: dict[str, str] = {}
        for role, display in (roles or {}).items():
            self._names[normalize_name(role)] = role
            if normalize_name(display):
                self._names[normalize_name(display)] = role
        self._epoch = 0
        self._last_applied: tuple[int, int, str] | None = None

    @classmethod
    def for_story(
        cls,
        story: Story,
        sink: PresetSink,
        runner: EffectRunner | None = None,
    ) -> RolePresetDispatcher:
        return cls(
            sink,
            story.title,
            base=story.base_preset,
            role_defaults=story.role_defaults,
            roles=story.roles,
            runner=runner,
        )

    @property
    def preset_name(self) -> str:
        return f"{PRESET_PREFIX}{self._title}"

    @property
    def epoch(self) -> int:
        return self._epoch

    def resolve_role(self, display_name: str | None) -> str | None:
        """Map a speaker's display name (or a role key) to a story role."""
        return self._names.get(normalize_name(display_name))

    def merged(self, role: str, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
        values: dict[str, Any] = {}
        values.update(copy.deepcopy(self._base))
        values.update(copy.deepcopy(self._role_defaults.get(role, {})))
        values.update(copy.deepcopy(dict(overrides or {})))
        if not isinstance(values.get("logit_bias"), list):
            base_bias = self._base.get("logit_bias")
            values["logit_bias"] = copy.deepcopy(base_bias) if isinstance(base_bias, list) else []
        return values

    def label(self, role: str, checkpoint_name: str | None = None) -> str:
        parts = [self.preset_name, f"[{role}]"]
        if checkpoint_name:
            parts.append(f"· {checkpoint_name}")
        return " ".join(parts)

    def apply_for_role(
        self,
        role: str,
        overrides: Mapping[str, Any] | None = None,
        checkpoint_name: str | None = None,
    ) -> dict[str, Any]:
        values = self.merged(role, overrides)
        logger.info(
            "applying preset %s for role %s at %s (override keys: %s)",
            self.preset_name, role, checkpoint_name, sorted(overrides or {}),
        )
        self._runner.spawn(
            f"preset:{role}", self._sink.apply_preset,
            self.preset_name, copy.deepcopy(values), self.label(role, checkpoint_name),
        )
        return values

    def apply_arbiter(
        self,
        overrides: Mapping[str, Any] | None = None,
        checkpoint_name: str | None = None,
    ) -> dict[str, Any]:
        """Write the arbiter preset. The next role check applies its preset again."""
        self._last_applied = None
        return self.apply_for_role(ARBITER_ROLE, overrides, checkpoint_name)

    # ------------------------------------------------------------------
    # Generation epochs
    # ------------------------------------------------------------------

    def new_epoch(self) -> int:
        self._epoch += 1
        self._last_applied = None
        return self._epoch

    def should_apply(self, role: str, checkpoint_index: int) -> bool:
        """True the first time `role` is seen at a checkpoint in this epoch."""
        key = (self._epoch, checkpoint_index, role)
        if key == self._last_applied:
            return False
        self._last_applied = key
        return True
