"""
Engine settings. Heuristic constants live here so they can be tuned per
deployment through TALLYIQ_* environment variables.
"""

from dataclasses import dataclass
import os


def _parse_float(value, default):
    if value is None or not value.strip():
        return default
    return float(value)


def _parse_int(value, default):
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass(frozen=True)
class EngineSettings:
    # aging
    default_credit_days: int = 30
    outstanding_epsilon: float = 0.01
    # import review
    reconciliation_tolerance: float = 1.0
    # turnover
    inventory_value_epsilon: float = 0.01
    # prediction
    min_orders: int = 2
    ewma_alpha: float = 0.3
    aggression: float = 0.85
    max_top_items: int = 15
    # upsell
    similarity_threshold: float = 0.5
    trending_ratio: float = 1.5
    max_upsells: int = 5
    max_co_purchase: int = 3
    max_trending: int = 2

    def __post_init__(self):
        if not 0 < self.ewma_alpha <= 1:
            raise ValueError(f'ewma_alpha must be in (0, 1], got {self.ewma_alpha}')
        if self.aggression <= 0:
            raise ValueError(f'aggression must be positive, got {self.aggression}')
        if self.min_orders < 2:
            raise ValueError('min_orders must be at least 2 to measure an interval')


def load_settings(environ=None):
    env = os.environ if environ is None else environ
    d = EngineSettings()
    return EngineSettings(
        default_credit_days=_parse_int(env.get('TALLYIQ_DEFAULT_CREDIT_DAYS'), d.default_credit_days),
        outstanding_epsilon=_parse_float(env.get('TALLYIQ_OUTSTANDING_EPSILON'), d.outstanding_epsilon),
        reconciliation_tolerance=_parse_float(env.get('TALLYIQ_RECON_TOLERANCE'), d.reconciliation_tolerance),
        inventory_value_epsilon=_parse_float(env.get('TALLYIQ_INVENTORY_EPSILON'), d.inventory_value_epsilon),
        min_orders=_parse_int(env.get('TALLYIQ_MIN_ORDERS'), d.min_orders),
        ewma_alpha=_parse_float(env.get('TALLYIQ_EWMA_ALPHA'), d.ewma_alpha),
        aggression=_parse_float(env.get('TALLYIQ_AGGRESSION'), d.aggression),
        max_top_items=_parse_int(env.get('TALLYIQ_MAX_TOP_ITEMS'), d.max_top_items),
        similarity_threshold=_parse_float(env.get('TALLYIQ_SIMILARITY_THRESHOLD'), d.similarity_threshold),
        trending_ratio=_parse_float(env.get('TALLYIQ_TRENDING_RATIO'), d.trending_ratio),
        max_upsells=_parse_int(env.get('TALLYIQ_MAX_UPSELLS'), d.max_upsells),
        max_co_purchase=_parse_int(env.get('TALLYIQ_MAX_CO_PURCHASE'), d.max_co_purchase),
        max_trending=_parse_int(env.get('TALLYIQ_MAX_TRENDING'), d.max_trending),
    )


settings = load_settings()
