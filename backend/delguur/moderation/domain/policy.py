"""Tunable moderation policy: report thresholds, appeal window, feed slots, breaker limits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from delguur.discovery.ranking import FeedConfig
from delguur.resilience.circuit_breaker import BreakerConfig
from delguur.settings import Settings, settings as app_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportThresholds:
    hide: int = 15
    delete: int = 30

    def validate(self) -> "ReportThresholds":
        if self.hide < 1 or self.delete < self.hide:
            raise ValueError("report thresholds must satisfy 1 <= hide <= delete")
        return self


@dataclass(frozen=True)
class ModerationPolicy:
    reports: ReportThresholds = field(default_factory=ReportThresholds)
    appeal_window_days: int = 7
    feed: FeedConfig = field(default_factory=FeedConfig)
    status_cache_ttl_seconds: int = 60
    breaker: BreakerConfig = field(default_factory=BreakerConfig)

    @staticmethod
    def default(source: Optional[Settings] = None) -> "ModerationPolicy":
        cfg = source or app_settings
        return ModerationPolicy(
            reports=ReportThresholds(
                hide=cfg.report_hide_threshold,
                delete=cfg.report_delete_threshold,
            ),
            appeal_window_days=cfg.appeal_window_days,
            feed=FeedConfig(
                total_items=cfg.discovery_total_items,
                new_item_slots=cfg.discovery_new_item_slots,
                random_slots=cfg.discovery_random_slots,
                boost_new_hours=cfg.discovery_boost_new_hours,
            ),
            status_cache_ttl_seconds=cfg.system_status_cache_ttl_seconds,
        )

    @staticmethod
    def from_mapping(config: Mapping[str, Any], base: Optional["ModerationPolicy"] = None) -> "ModerationPolicy":
        """Overlay a parsed config mapping on `base`; raises ValueError when the result is inconsistent."""
        base = base or ModerationPolicy.default()
        reports_cfg = config.get("reports") or {}
        appeals_cfg = config.get("appeals") or {}
        feed_cfg = config.get("discovery") or {}
        mode_cfg = config.get("system_mode") or {}
        breaker_cfg = config.get("circuit_breaker") or {}
        policy = ModerationPolicy(
            reports=ReportThresholds(
                hide=int(reports_cfg.get("hide_threshold", base.reports.hide)),
                delete=int(reports_cfg.get("delete_threshold", base.reports.delete)),
            ).validate(),
            appeal_window_days=int(appeals_cfg.get("window_days", base.appeal_window_days)),
            feed=FeedConfig(
                total_items=int(feed_cfg.get("total_items", base.feed.total_items)),
                new_item_slots=int(feed_cfg.get("new_item_slots", base.feed.new_item_slots)),
                random_slots=int(feed_cfg.get("random_slots", base.feed.random_slots)),
                boost_new_hours=float(feed_cfg.get("boost_new_hours", base.feed.boost_new_hours)),
            ).validate(),
            status_cache_ttl_seconds=int(mode_cfg.get("cache_ttl_seconds", base.status_cache_ttl_seconds)),
            breaker=BreakerConfig(
                failure_threshold=int(breaker_cfg.get("failure_threshold", base.breaker.failure_threshold)),
                success_threshold=int(breaker_cfg.get("success_threshold", base.breaker.success_threshold)),
                reset_timeout_seconds=float(
                    breaker_cfg.get("reset_timeout_seconds", base.breaker.reset_timeout_seconds)
                ),
            ),
        )
        if policy.appeal_window_days < 0:
            raise ValueError("appeal window must be non-negative")
        if policy.status_cache_ttl_seconds < 1:
            raise ValueError("status cache ttl must be at least one second")
        return policy


def load_policy(path: str | Path | None) -> ModerationPolicy:
    """Load policy overrides from YAML, falling back to settings-derived defaults."""

    base = ModerationPolicy.default()
    if not path:
        return base
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("moderation policy file missing at %s; using defaults", path)
        return base
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.warning("failed to parse moderation policy YAML: %s", exc)
        return base
    if data is None:
        return base
    if not isinstance(data, Mapping):
        logger.warning("moderation policy file invalid; falling back to defaults")
        return base
    try:
        return ModerationPolicy.from_mapping(data, base)
    except (TypeError, ValueError) as exc:
        logger.warning("moderation policy rejected (%s); falling back to defaults", exc)
        return base
