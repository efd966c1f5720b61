"""Plugin (driver) dispatch: run external executables on transition events.

A plugin is an executable ``<dir>/<name>`` next to a manifest
``<dir>/<name>.toml``::

    triggers = ["DebtCollection", "DebtCollectionPaused"]
    enabled = true          # optional
    timeout_seconds = 10    # optional

Plugins get ``argv = [event, active_minutes, debt]`` (active/debt are empty
strings for ``Normal``). Every invocation is isolated: a crash, a non-zero
exit or a timeout is logged and counted, and the remaining plugins still run.
"""

from __future__ import annotations

import asyncio
import logging
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from .metrics import increment
from .models import EventKind, TransitionEvent

logger = logging.getLogger(__name__)

DEFAULT_PLUGIN_TIMEOUT_SECONDS = 30.0

TRIGGER_ALIASES: dict[str, EventKind] = {
    "normal": "normal",
    "debtcollection": "debt_collection",
    "debt_collection": "debt_collection",
    "debtcollectionpaused": "debt_collection_paused",
    "debt_collection_paused": "debt_collection_paused",
}

PluginStatus = Literal["ok", "failed", "timeout", "launch_error"]


@dataclass(frozen=True)
class PluginManifest:
    name: str
    executable: Path
    manifest_path: Path
    triggers: frozenset[EventKind]
    enabled: bool = True
    timeout_seconds: float = DEFAULT_PLUGIN_TIMEOUT_SECONDS


@dataclass(frozen=True)
class PluginRun:
    plugin: str
    status: PluginStatus
    returncode: int | None = None
    detail: str | None = None


def parse_triggers(raw: Any) -> frozenset[EventKind]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("triggers must be a non-empty list")
    triggers: set[EventKind] = set()
    for item in raw:
        kind = TRIGGER_ALIASES.get(str(item).strip().lower())
        if kind is None:
            raise ValueError(f"unknown trigger {item!r}")
        triggers.add(kind)
    return frozenset(triggers)


def load_manifest(manifest_path: Path, default_timeout: float) -> PluginManifest:
    with manifest_path.open("rb") as fh:
        data = tomllib.load(fh)

    timeout = data.get("timeout_seconds", default_timeout)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("timeout_seconds must be a positive number")
    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ValueError("enabled must be a boolean")

    return PluginManifest(
        name=manifest_path.stem,
        executable=manifest_path.with_suffix(""),
        manifest_path=manifest_path,
        triggers=parse_triggers(data.get("triggers")),
        enabled=enabled,
        timeout_seconds=float(timeout),
    )


def discover_plugins(
    plugins_dir: str | Path,
    default_timeout: float = DEFAULT_PLUGIN_TIMEOUT_SECONDS,
) -> list[PluginManifest]:
    """Load every valid manifest in ``plugins_dir``; broken ones are skipped."""
    base_dir = Path(plugins_dir)
    if not base_dir.is_dir():
        raise FileNotFoundError(f"plugins directory {base_dir} not found")

    plugins: list[PluginManifest] = []
    for manifest_path in sorted(base_dir.glob("*.toml")):
        try:
            manifest = load_manifest(manifest_path, default_timeout)
        except (OSError, tomllib.TOMLDecodeError, ValueError) as exc:
            logger.warning("Failed to process plugin manifest at %s: %s", manifest_path, exc)
            continue

        if not manifest.executable.is_file():
            logger.warning(
                "Plugin manifest found at %s, but there's no plugin file at %s",
                manifest_path,
                manifest.executable,
            )
            continue

        plugins.append(manifest)
        logger.debug(
            "Discovered plugin %s (triggers=%s, enabled=%s)",
            manifest.name,
            sorted(manifest.triggers),
            manifest.enabled,
        )

    logger.info("Discovered %d plugin(s) in %s", len(plugins), base_dir)
    return plugins


class PluginDispatcher:
    def __init__(self, plugins: Iterable[PluginManifest]) -> None:
        self.plugins = list(plugins)

    def matching(self, event: TransitionEvent) -> list[PluginManifest]:
        return [p for p in self.plugins if p.enabled and event.event in p.triggers]

    async def run_plugin(self, plugin: PluginManifest, event: TransitionEvent) -> PluginRun:
        increment("plugin_runs")
        try:
            proc = await asyncio.create_subprocess_exec(
                str(plugin.executable),
                *event.plugin_args(),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            increment("plugin_failures")
            logger.error("Failed to launch plugin %s: %s", plugin.executable, exc)
            return PluginRun(plugin.name, "launch_error", detail=str(exc))

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=plugin.timeout_seconds)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            increment("plugin_failures")
            logger.error(
                "Plugin %s timed out after %.1fs and was killed",
                plugin.executable,
                plugin.timeout_seconds,
            )
            return PluginRun(plugin.name, "timeout", detail=f"timeout after {plugin.timeout_seconds}s")

        if proc.returncode != 0:
            increment("plugin_failures")
            detail = (stderr or b"").decode("utf-8", errors="replace").strip()[-500:]
            logger.error(
                "Plugin %s errored with exit code %s: %s",
                plugin.executable,
                proc.returncode,
                detail,
            )
            return PluginRun(plugin.name, "failed", returncode=proc.returncode, detail=detail or None)

        logger.info("Plugin %s finished", plugin.executable)
        return PluginRun(plugin.name, "ok", returncode=0)

    async def dispatch(self, event: TransitionEvent) -> list[PluginRun]:
        plugins = self.matching(event)
        if not plugins:
            logger.debug("No plugins subscribed to event=%s", event.event)
            return []
        return list(await asyncio.gather(*(self.run_plugin(p, event) for p in plugins)))

    async def __call__(self, event: TransitionEvent) -> None:
        """Subscriber entrypoint for the emitter."""
        await self.dispatch(event)
