# models/earning_entry.py
"""
EarningEntry - append-only commission ledger row.
Balances are SUM(amountCents) filtered by status; there is no balance column.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, Index
from models.base import Base, _get_current_time

EARNING_PENDING = "pending"
EARNING_ELIGIBLE = "eligible"
EARNING_CAPPED = "capped"
EARNING_PAID = "paid"

EARNING_STATUSES = (
    EARNING_PENDING,
    EARNING_ELIGIBLE,
    EARNING_CAPPED,
    EARNING_PAID,
)

# Allowed status moves; everything else is rejected by ledger listeners
EARNING_TRANSITIONS = {
    (EARNING_PENDING, EARNING_ELIGIBLE),
    (EARNING_PENDING, EARNING_CAPPED),
    (EARNING_ELIGIBLE, EARNING_PAID),
}


class EarningEntry(Base):
    __tablename__ = 'earning_entries'

    entryID = Column(Integer, primary_key=True, autoincrement=True)

    beneficiaryID = Column(Integer, ForeignKey('members.memberID'), nullable=False)
    sourceMemberID = Column(Integer, ForeignKey('members.memberID'), nullable=False)
    sourceType = Column(String(50), nullable=False)  # residual_commission, team_bonus, ...

    amountCents = Column(BigInteger, nullable=False)
    level = Column(Integer, nullable=False)  # generations between source and beneficiary

    status = Column(String(20), nullable=False, default=EARNING_PENDING)
    periodID = Column(Integer, ForeignKey('periods.periodID'), nullable=False)

    createdAt = Column(DateTime, nullable=False, default=_get_current_time)
    settledAt = Column(DateTime, nullable=True)
    paidAt = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_earning_entries_period_beneficiary', 'periodID', 'beneficiaryID', 'status'),
        Index('ix_earning_entries_beneficiary_created', 'beneficiaryID', 'createdAt'),
    )

    def __repr__(self):
        return (
            f"<EarningEntry(entryID={self.entryID}, beneficiary={self.beneficiaryID}, "
            f"amount={self.amountCents}, status={self.status})>"
        )
