"""
Application dependencies

The process-wide installment system: storage, directories and the engine
components wired together from configuration.
"""

import threading
from datetime import date
from typing import Any, Callable, Dict, Optional

from ..audit import AuditTrail
from ..config import InstallmentConfig, get_config
from ..directory import StorageCustomerDirectory, StorageProductCatalog
from ..guarantors import GuarantorManager
from ..payments import PaymentPoster
from ..plans import InstallmentPlan, InstallmentPlanManager
from ..reporting import ReportingEngine
from ..storage import StorageInterface, create_storage
from ..views import plan_view


class InstallmentSystem:
    """Installment engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[InstallmentConfig] = None,
        clock: Callable[[], date] = date.today
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.customer_directory = StorageCustomerDirectory(self.storage)
        self.product_catalog = StorageProductCatalog(self.storage)

        self.plan_manager = InstallmentPlanManager(
            self.storage, self.customer_directory, self.product_catalog,
            audit_trail=self.audit_trail, clock=clock
        )
        self.payment_poster = PaymentPoster(self.plan_manager)
        self.guarantor_manager = GuarantorManager(
            self.plan_manager, self.customer_directory, self.audit_trail
        )
        self.reporting_engine = ReportingEngine(
            self.plan_manager, self.customer_directory, self.product_catalog,
            upcoming_window_days=self.config.upcoming_window_days,
            list_limit=self.config.dashboard_list_limit,
            recent_plans_limit=self.config.recent_plans_limit,
            trend_months=self.config.collection_trend_months
        )

    def plan_view(self, plan: InstallmentPlan) -> Dict[str, Any]:
        """PlanView of a plan with its customer, product and guarantors resolved"""
        return plan_view(
            plan,
            self.customer_directory.get_customer(plan.customer_id),
            self.product_catalog.get_product(plan.product_id),
            guarantors=self.guarantor_manager.list_guarantors(plan.id),
            default_image=self.config.default_product_image
        )

    def close(self) -> None:
        self.storage.close()


_system: Optional[InstallmentSystem] = None
_system_lock = threading.Lock()


def get_system() -> InstallmentSystem:
    """Dependency returning the process-wide system, built on first use"""
    global _system
    with _system_lock:
        if _system is None:
            _system = InstallmentSystem()
        return _system
