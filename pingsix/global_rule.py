"""Global rules: plugins that run for every request."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from pingsix.models import GlobalRule
from pingsix.resources import ProxyPlugin, ProxyPluginExecutor, ResourceMap, build_plugin

log = logging.getLogger(__name__)


@dataclass
class ProxyGlobalRule:
    """A global rule together with its built plugins."""

    inner: GlobalRule
    plugins: list[ProxyPlugin] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.inner.id

    @classmethod
    def from_config(cls, rule: GlobalRule) -> ProxyGlobalRule:
        """Build every plugin of the rule; raises PluginError on failure."""
        plugins = []
        for name, value in rule.plugins.items():
            log.info("Loading plugin: %s", name)
            plugins.append(build_plugin(name, value))
        return cls(inner=rule, plugins=plugins)


GLOBAL_RULE_MAP: ResourceMap[ProxyGlobalRule] = ResourceMap()
_global_plugin = ProxyPluginExecutor()


def global_plugin_fetch() -> ProxyPluginExecutor:
    """The executor currently holding the global plugins."""
    return _global_plugin


def reload_global_plugin() -> None:
    """Rebuild the global executor: one plugin per name, highest priority first.

    When several rules carry a plugin of the same name, the last one wins.
    """
    global _global_plugin
    unique: dict[str, ProxyPlugin] = {}
    for rule in GLOBAL_RULE_MAP:
        for plugin in rule.plugins:
            unique[plugin.name] = plugin
    plugins = sorted(unique.values(), key=lambda plugin: plugin.priority, reverse=True)
    _global_plugin = ProxyPluginExecutor(plugins)


def load_static_global_rules(rules: Iterable[GlobalRule]) -> None:
    """Replace all global rules; nothing changes if any rule fails to build."""
    built = []
    for rule in rules:
        log.info("Configuring GlobalRule: %s", rule.id)
        try:
            built.append(ProxyGlobalRule.from_config(rule))
        except Exception as exc:
            log.error("Failed to configure GlobalRule %s: %s", rule.id, exc)
            raise
    GLOBAL_RULE_MAP.reload_resources(built)
    reload_global_plugin()