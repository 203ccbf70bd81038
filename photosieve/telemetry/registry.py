"""Telemetry registry for discovering, loading, and invoking sinks.

TelemetryRegistry discovers BaseTelemetrySink subclasses from a directory,
registers them, and dispatches hook calls with full error isolation -- a
failing sink never affects an analysis run.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import sys
from pathlib import Path
from typing import Any

from photosieve.telemetry.base_sink import BaseTelemetrySink

logger = logging.getLogger(__name__)


class TelemetryRegistry:
    """Discovers, registers, and invokes telemetry sink hooks."""

    def __init__(self) -> None:
        self._sinks: dict[str, BaseTelemetrySink] = {}

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover_sinks(self, sink_dir: Path) -> list[str]:
        """Discover and load sinks from *sink_dir*.

        Each immediate sub-directory that contains an ``__init__.py`` is
        loaded and scanned for :class:`BaseTelemetrySink` subclasses, which
        are instantiated and registered.  Returns the discovered names.
        """
        if not sink_dir.exists() or not sink_dir.is_dir():
            return []

        discovered: list[str] = []

        for child in sorted(sink_dir.iterdir()):
            if not child.is_dir():
                continue
            init_file = child / "__init__.py"
            if not init_file.exists():
                continue

            try:
                module_name = f"telemetry_sinks.{child.name}"
                spec = importlib.util.spec_from_file_location(
                    module_name, str(init_file)
                )
                if spec is None or spec.loader is None:
                    logger.warning("Could not create module spec for %s", child.name)
                    continue

                module = importlib.util.module_from_spec(spec)
                sys.modules[module_name] = module
                spec.loader.exec_module(module)

                for _attr_name, attr_value in inspect.getmembers(module, inspect.isclass):
                    if (
                        issubclass(attr_value, BaseTelemetrySink)
                        and attr_value is not BaseTelemetrySink
                        and not inspect.isabstract(attr_value)
                        and attr_value.__module__ == module_name
                    ):
                        instance = attr_value()
                        self.register_sink(instance)
                        discovered.append(instance.name)
                        logger.info("Discovered telemetry sink: %s", instance.name)

            except Exception:
                logger.exception("Failed to load telemetry sink from %s", child.name)

        return discovered

    # ------------------------------------------------------------------
    # Manual registration
    # ------------------------------------------------------------------

    def register_sink(self, sink: BaseTelemetrySink) -> None:
        """Register a sink instance and activate it."""
        self._sinks[sink.name] = sink
        try:
            sink.on_activate()
        except Exception:
            logger.exception("Sink %s raised during on_activate", sink.name)

    # ------------------------------------------------------------------
    # Hook invocation
    # ------------------------------------------------------------------

    def trigger_hook(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Invoke *hook_name* on every registered sink.

        A failing sink is logged but never propagates its exception.
        Returns one value per sink that implements the hook.
        """
        results: list[Any] = []

        for sink_name, sink in self._sinks.items():
            method = getattr(sink, hook_name, None)
            if method is None:
                continue
            try:
                results.append(method(**kwargs))
            except Exception:
                logger.exception("Sink %s raised in hook %s", sink_name, hook_name)

        return results

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def get_sink(self, name: str) -> BaseTelemetrySink | None:
        return self._sinks.get(name)

    def list_sinks(self) -> list[str]:
        return list(self._sinks.keys())

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Deactivate all registered sinks, isolating each failure."""
        for sink_name, sink in self._sinks.items():
            try:
                sink.on_deactivate()
            except Exception:
                logger.exception("Sink %s raised during on_deactivate", sink_name)
