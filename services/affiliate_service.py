"""
Affiliate Commission Service
Conversion tracking and commission payouts; commission_paid never exceeds commission_earned
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from models import AffiliatePaymentStatus, AffiliateProgram, AffiliateTracking
from services.bms_record_service import BMSRecordService, require_actor
from services.state_transition_service import StateTransitionService
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import EntityNotFoundError, InvalidTransitionError, InvariantViolationError, ValidationError
from utils.insert_schema import FieldViolation

logger = logging.getLogger(__name__)


@dataclass
class PayoutSummary:
    affiliate_id: str
    paid_amount: Decimal
    conversions_paid: List[str]
    below_minimum: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["paid_amount"] = format(self.paid_amount, "f")
        return data


def _money(value: Any, field_name: str) -> Decimal:
    try:
        amount = MonetaryDecimal.validate_positive(value, field_name)
    except ValueError as e:
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            [FieldViolation(field_name, "out_of_range", f"{field_name} must be a positive amount")],
        ) from e
    if MonetaryDecimal.check_precision(amount, 18, 2):
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            [FieldViolation(field_name, "scale", f"{field_name} allows at most 2 decimal places")],
        )
    return amount


def outstanding_commission(tracking: AffiliateTracking) -> Decimal:
    return MonetaryDecimal.subtract_precise(tracking.commission_earned or 0, tracking.commission_paid or 0)


def _ensure_pending(tracking: AffiliateTracking, attempted: str) -> None:
    if tracking.payment_status != AffiliatePaymentStatus.PENDING.value:
        raise InvalidTransitionError(
            "affiliate_tracking", tracking.payment_status, attempted,
            reason=f"commission is already {tracking.payment_status}",
        )


class AffiliateService:

    @classmethod
    def record_conversion(cls, session: Session, payload: Mapping[str, Any]) -> AffiliateTracking:
        """Track a referral conversion; payouts start at zero and only move through pay_commission"""
        data = dict(payload)
        program_id = data.get("program_id", data.get("programId"))
        if isinstance(program_id, str):
            program = session.get(AffiliateProgram, program_id)
            if program is not None and not program.is_active:
                raise InvariantViolationError(f"Affiliate program {program_id} is not active")

        tracking = BMSRecordService.create_record(session, "affiliate_tracking", data)
        logger.info(
            f"🤝 AFFILIATE_CONVERSION: {tracking.id} affiliate={tracking.affiliate_id} "
            f"earned={tracking.commission_earned}"
        )
        return tracking

    @classmethod
    def accrue_commission(cls, session: Session, tracking_id: str, amount: Any) -> AffiliateTracking:
        """Add to commission_earned on a still-pending conversion"""
        amount = _money(amount, "commission_earned")

        with atomic_transaction(session) as tx_session:
            tracking = lock_entity(tx_session, AffiliateTracking, tracking_id)
            _ensure_pending(tracking, "accrue")
            tracking.commission_earned = MonetaryDecimal.add_precise(tracking.commission_earned or 0, amount)

        logger.info(f"➕ COMMISSION_ACCRUED: {tracking.id} +{amount} earned={tracking.commission_earned}")
        return tracking

    @classmethod
    def pay_commission(
        cls,
        session: Session,
        tracking_id: str,
        amount: Any,
        paid_by: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> AffiliateTracking:
        """
        Pay part or all of the outstanding commission.

        Raises:
            InvariantViolationError: the payment would exceed commission_earned
        """
        amount = _money(amount, "commission_paid")

        with atomic_transaction(session) as tx_session:
            tracking = lock_entity(tx_session, AffiliateTracking, tracking_id)
            _ensure_pending(tracking, AffiliatePaymentStatus.PAID.value)

            outstanding = outstanding_commission(tracking)
            if amount > outstanding:
                logger.warning(
                    f"🚫 COMMISSION_OVERPAYMENT: {tracking.id} payment {amount} > outstanding {outstanding}"
                )
                raise InvariantViolationError(
                    f"Payment {amount} exceeds outstanding commission {outstanding} on {tracking.id}"
                )

            tracking.commission_paid = MonetaryDecimal.add_precise(tracking.commission_paid or 0, amount)
            if tracking.commission_paid == MonetaryDecimal.quantize_usd(tracking.commission_earned):
                StateTransitionService.transition(tracking, "mark_paid", actor=paid_by, at=at)

        logger.info(
            f"💸 COMMISSION_PAID: {tracking.id} {amount} "
            f"({tracking.commission_paid}/{tracking.commission_earned}) status={tracking.payment_status}"
        )
        return tracking

    @classmethod
    def pay_outstanding(
        cls,
        session: Session,
        affiliate_id: str,
        program_id: str,
        paid_by: Optional[str] = None,
    ) -> PayoutSummary:
        """
        Settle every pending conversion of an affiliate in one payout, provided
        the total reaches the program's minimum payout.
        """
        affiliate_id = require_actor("affiliate_id", affiliate_id)
        program = session.get(AffiliateProgram, program_id)
        if program is None:
            raise EntityNotFoundError("affiliate_programs", program_id)

        with atomic_transaction(session) as tx_session:
            pending = (
                tx_session.query(AffiliateTracking)
                .filter(
                    AffiliateTracking.affiliate_id == affiliate_id,
                    AffiliateTracking.program_id == program_id,
                    AffiliateTracking.payment_status == AffiliatePaymentStatus.PENDING.value,
                )
                .order_by(AffiliateTracking.created_at, AffiliateTracking.id)
                .with_for_update()
                .all()
            )
            payable = [t for t in pending if outstanding_commission(t) > 0]
            total = MonetaryDecimal.add_precise(*[outstanding_commission(t) for t in payable])

            if total < MonetaryDecimal.quantize_usd(program.minimum_payout):
                logger.info(
                    f"⏳ PAYOUT_DEFERRED: {affiliate_id} outstanding {total} below minimum {program.minimum_payout}"
                )
                return PayoutSummary(affiliate_id, total, [], below_minimum=True)

            for tracking in payable:
                tracking.commission_paid = MonetaryDecimal.quantize_usd(tracking.commission_earned)
                StateTransitionService.transition(tracking, "mark_paid", actor=paid_by)

        logger.info(f"💸 PAYOUT_SETTLED: {affiliate_id} {total} across {len(payable)} conversion(s)")
        return PayoutSummary(affiliate_id, total, [t.id for t in payable], below_minimum=False)

    @classmethod
    def cancel(cls, session: Session, tracking_id: str, actor: Optional[str] = None) -> AffiliateTracking:
        """Void a conversion (fraud, chargeback); already-paid amounts stay recorded"""
        return StateTransitionService.transition_entity(
            session, "affiliate_tracking", tracking_id, "cancel", actor=actor
        )
