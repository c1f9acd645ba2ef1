"""
Strategy registry: maps configured strategy names to strategy instances.
"""
import logging
from typing import Dict, List, Optional

from core.models import STRATEGY_NAMES
from crawler.strategies.ats_api import AtsApiStrategy
from crawler.strategies.base import ExtractionStrategy
from crawler.strategies.browser import BrowserStrategy
from crawler.strategies.data_island import DataIslandStrategy
from crawler.strategies.dom import DomStrategy
from crawler.strategies.jsonld import JsonLdStrategy
from crawler.strategies.llm import LlmStrategy

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """Registry for extraction strategies"""

    def __init__(self):
        self._strategies: Dict[str, ExtractionStrategy] = {}

    def register(self, strategy: ExtractionStrategy):
        """Register a strategy"""
        if strategy.name in self._strategies:
            logger.warning(f"Strategy {strategy.name} already registered, replacing")
        self._strategies[strategy.name] = strategy

    def get(self, name: str) -> Optional[ExtractionStrategy]:
        return self._strategies.get(name)

    def resolve(self, names: List[str]) -> List[ExtractionStrategy]:
        """Strategies for the given names, in the given order; unknown names are skipped"""
        resolved = []
        for name in names:
            strategy = self._strategies.get(name)
            if strategy is None:
                logger.warning(f"Unknown strategy '{name}', ignoring")
                continue
            resolved.append(strategy)
        return resolved

    def names(self) -> List[str]:
        return list(self._strategies)


def default_registry() -> StrategyRegistry:
    """Registry holding every built-in strategy"""
    registry = StrategyRegistry()
    for strategy in (AtsApiStrategy(), JsonLdStrategy(), DataIslandStrategy(),
                     LlmStrategy(), DomStrategy(), BrowserStrategy()):
        registry.register(strategy)
    missing = set(STRATEGY_NAMES) - set(registry.names())
    if missing:
        logger.error(f"Built-in strategies missing from registry: {sorted(missing)}")
    return registry
