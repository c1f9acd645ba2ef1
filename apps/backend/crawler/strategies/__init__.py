"""
Extraction strategies for career pages and ATS back ends.

Each strategy either yields jobs, reports that it does not apply
(skipped), or raises ScrapingError. The engine tries them in the
company's declared order.
"""

from .base import CompanyRun, ExtractionStrategy, StrategyOutcome
from .registry import StrategyRegistry, default_registry

__all__ = [
    'CompanyRun',
    'ExtractionStrategy',
    'StrategyOutcome',
    'StrategyRegistry',
    'default_registry',
]
