"""
Plan Guarantor Module

Links existing parties to an installment plan as guarantors. A party may
guarantee many plans and a plan may have many guarantors; the party record
itself stays in the customer directory.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
import uuid

from .audit import AuditTrail, AuditEventType
from .directory import CustomerDirectory, CustomerRef
from .errors import NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .plans import InstallmentPlanManager
from .storage import StorageRecord

MAX_RELATIONSHIP_LENGTH = 100


@dataclass
class PlanGuarantor(StorageRecord):
    """Party guaranteeing a plan"""
    plan_id: str
    party_id: str
    relationship: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlanGuarantor':
        data = dict(data)
        data.pop('version', None)
        return super().from_dict(data)


def _clean_relationship(relationship: Optional[str]) -> Optional[str]:
    if relationship is None:
        return None
    relationship = str(relationship).strip()
    if len(relationship) > MAX_RELATIONSHIP_LENGTH:
        raise ValidationError(
            f"relationship must be at most {MAX_RELATIONSHIP_LENGTH} characters"
        )
    return relationship or None


class GuarantorManager:
    """Manages the guarantors linked to installment plans"""

    def __init__(
        self,
        plan_manager: InstallmentPlanManager,
        customer_directory: CustomerDirectory,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.plan_manager = plan_manager
        self.storage = plan_manager.storage
        self.customer_directory = customer_directory
        self.audit_trail = audit_trail
        self.logger = get_logger("installments.guarantors")
        self.table_name = "plan_guarantors"

    def add_guarantor(self, plan_id: str, party_id: str,
                      relationship: Optional[str] = None) -> Tuple[PlanGuarantor, CustomerRef]:
        """
        Link an existing party to a plan

        Raises:
            NotFoundError: Plan or party does not exist
            ValidationError: Relationship text is too long
        """
        if not self.plan_manager.exists(plan_id):
            raise NotFoundError("plan", plan_id)
        party = self.customer_directory.get_customer(str(party_id))
        if party is None:
            raise NotFoundError("party", party_id)

        now = datetime.now(timezone.utc)
        guarantor = PlanGuarantor(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            plan_id=plan_id,
            party_id=party.id,
            relationship=_clean_relationship(relationship)
        )
        self.storage.save(self.table_name, guarantor.id, guarantor.to_dict())

        log_action(
            self.logger, "info", "Guarantor linked to plan",
            action="add_guarantor", resource=f"plan:{plan_id}",
            extra={"guarantor_id": guarantor.id, "party_id": party.id}
        )
        self._audit(AuditEventType.GUARANTOR_ADDED, guarantor)
        return guarantor, party

    def update_guarantor(self, guarantor_id: str, relationship: Optional[str],
                         plan_id: Optional[str] = None) -> Tuple[PlanGuarantor, CustomerRef]:
        """Change the relationship recorded for a guarantor link"""
        guarantor = self.get_guarantor(guarantor_id, plan_id)
        guarantor.relationship = _clean_relationship(relationship)
        guarantor.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, guarantor.id, guarantor.to_dict())

        log_action(
            self.logger, "info", "Guarantor updated",
            action="update_guarantor", resource=f"plan:{guarantor.plan_id}",
            extra={"guarantor_id": guarantor.id, "relationship": guarantor.relationship}
        )
        self._audit(AuditEventType.GUARANTOR_UPDATED, guarantor)
        return guarantor, self._party(guarantor)

    def remove_guarantor(self, guarantor_id: str, plan_id: Optional[str] = None) -> None:
        """Unlink a guarantor from its plan (the party itself is untouched)"""
        guarantor = self.get_guarantor(guarantor_id, plan_id)
        self.storage.delete(self.table_name, guarantor.id)

        log_action(
            self.logger, "info", "Guarantor unlinked from plan",
            action="remove_guarantor", resource=f"plan:{guarantor.plan_id}",
            extra={"guarantor_id": guarantor.id, "party_id": guarantor.party_id}
        )
        self._audit(AuditEventType.GUARANTOR_REMOVED, guarantor)

    def get_guarantor(self, guarantor_id: str, plan_id: Optional[str] = None) -> PlanGuarantor:
        """Load a guarantor link, optionally requiring it to belong to ``plan_id``"""
        data = self.storage.load(self.table_name, guarantor_id)
        if not data or (plan_id is not None and data.get("plan_id") != plan_id):
            raise NotFoundError("guarantor", guarantor_id)
        return PlanGuarantor.from_dict(data)

    def list_guarantors(self, plan_id: str) -> List[Tuple[PlanGuarantor, CustomerRef]]:
        """
        Guarantors of a plan in the order they were linked. Links whose party
        has since disappeared from the directory are skipped.
        """
        links = [PlanGuarantor.from_dict(data)
                 for data in self.storage.find(self.table_name, {'plan_id': plan_id})]
        links.sort(key=lambda g: (g.created_at, g.id))

        result = []
        for guarantor in links:
            party = self.customer_directory.get_customer(guarantor.party_id)
            if party is not None:
                result.append((guarantor, party))
        return result

    def _party(self, guarantor: PlanGuarantor) -> CustomerRef:
        party = self.customer_directory.get_customer(guarantor.party_id)
        if party is None:
            raise NotFoundError("party", guarantor.party_id)
        return party

    def _audit(self, event_type: AuditEventType, guarantor: PlanGuarantor) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="plan",
                entity_id=guarantor.plan_id,
                metadata={
                    "guarantor_id": guarantor.id,
                    "party_id": guarantor.party_id,
                    "relationship": guarantor.relationship
                }
            )
