"""
Services 패키지

비즈니스 로직 서비스 클래스들을 제공합니다.
"""

from .balance_service import BalanceSynchronizer
from .cash_details_service import CashDetailsService
from .cashflow_service import CashflowService
from .exchange_rate_service import ExchangeRateService
from .materializer import MaterializationReport, OccurrenceMaterializer
from .notifier import ChangeNotifier, LoggingChangeNotifier
from .template_service import TemplateService

__all__ = [
    "BalanceSynchronizer",
    "CashDetailsService",
    "CashflowService",
    "ExchangeRateService",
    "MaterializationReport",
    "OccurrenceMaterializer",
    "ChangeNotifier",
    "LoggingChangeNotifier",
    "TemplateService",
]
