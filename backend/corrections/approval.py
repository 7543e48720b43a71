"""Role-gated, multi-level approval for corrections."""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.errors import ApprovalError
from shared.models.domain import Correction, ImpactReport
from shared.models.enums import ApproverRole


class ApprovalPolicy:
    """
    Every correction needs a commissioner. Corrections whose impact reaches
    ``admin_threshold`` points also need an admin, after the commissioner.
    A higher tier may stand in for a lower one; nobody approves twice and
    nobody approves their own submission.
    """

    def __init__(self, admin_threshold: Decimal) -> None:
        self.admin_threshold = admin_threshold

    def required_tiers(self, impact: ImpactReport) -> list[ApproverRole]:
        tiers = [ApproverRole.COMMISSIONER]
        if impact.magnitude >= self.admin_threshold:
            tiers.append(ApproverRole.ADMIN)
        return tiers

    @staticmethod
    def next_tier(correction: Correction) -> Optional[ApproverRole]:
        done = len(correction.approver_chain)
        if done >= len(correction.required_tiers):
            return None
        return correction.required_tiers[done]

    def check(self, correction: Correction, approver_id: str, role: ApproverRole) -> None:
        tier = self.next_tier(correction)
        if tier is None:
            raise ApprovalError(f"correction {correction.correction_id} needs no further approval")
        if approver_id == correction.submitted_by:
            raise ApprovalError("submitter cannot approve their own correction")
        if any(a.approver_id == approver_id for a in correction.approver_chain):
            raise ApprovalError(f"{approver_id} already approved correction {correction.correction_id}")
        if role.rank < tier.rank:
            raise ApprovalError(f"approval requires role {tier.value}, got {role.value}")

    def is_satisfied(self, correction: Correction) -> bool:
        return bool(correction.required_tiers) and self.next_tier(correction) is None
