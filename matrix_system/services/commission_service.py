# matrix_system/services/commission_service.py
"""
Commission ledger service.

Entries are append-only: record() writes pending rows, settle() moves them
to eligible or capped against the beneficiary's weekly cap, markPaid()
moves eligible rows to paid. Balances are always SUM(amountCents) by status.
"""
from typing import Dict, Iterable, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.member import Member
from models.period import Period, PERIOD_OPEN, PERIOD_SETTLED
from models.earning_entry import (
    EarningEntry,
    EARNING_PENDING,
    EARNING_ELIGIBLE,
    EARNING_CAPPED,
    EARNING_PAID,
    EARNING_STATUSES,
)
from matrix_system.errors import (
    DuplicateEvent,
    MatrixError,
    PeriodAlreadySettled,
    RankConfigurationError,
    UnknownMember,
)
from matrix_system.services.rank_service import RankService
from matrix_system.utils.chain_walker import ChainWalker
from matrix_system.utils.idempotency import check_event, claim_event
from matrix_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class CommissionService:
    """Service for the earnings ledger."""

    def __init__(self, session: Session):
        self.session = session
        self.rankService = RankService(session)

    # ============================================================
    # RECORD
    # ============================================================

    async def record(
            self,
            beneficiaryId: int,
            sourceId: int,
            sourceType: str,
            amountCents: int,
            periodId: Optional[int] = None,
            eventKey: Optional[str] = None
    ) -> Optional[EarningEntry]:
        """
        Create a pending earning entry.

        Rejected (nothing written, returns None) when the amount is not a
        positive integer, the source is not in the beneficiary's downline,
        the source is deeper than the beneficiary rank's eligible_depth, or
        the target period is not open.

        Args:
            beneficiaryId: Member receiving the commission
            sourceId: Member whose activity generated it
            sourceType: e.g. residual_commission, team_bonus
            amountCents: Positive integer amount in cents
            periodId: Target period (defaults to the open period)
            eventKey: Idempotency key of the commission.trigger event

        Returns:
            Created EarningEntry or None if rejected

        Raises:
            UnknownMember: Beneficiary or source not found
            RankConfigurationError: Beneficiary's rank is not configured
        """
        try:
            check_event(self.session, eventKey)
        except DuplicateEvent as e:
            return self.session.get(EarningEntry, e.resultRef) if e.resultRef else None

        if isinstance(amountCents, bool) or not isinstance(amountCents, int) or amountCents <= 0:
            logger.warning(
                f"Commission rejected: invalid amount {amountCents!r} "
                f"for beneficiary {beneficiaryId}"
            )
            return None

        if not sourceType:
            logger.warning(f"Commission rejected: empty source type for beneficiary {beneficiaryId}")
            return None

        beneficiary = self.session.get(Member, beneficiaryId)
        if beneficiary is None:
            raise UnknownMember(f"Beneficiary {beneficiaryId} not found")

        source = self.session.get(Member, sourceId)
        if source is None:
            raise UnknownMember(f"Source member {sourceId} not found")

        period = await self._resolvePeriod(periodId)
        if period is None:
            return None

        rank = await self.rankService.getRank(beneficiary)

        level = ChainWalker(self.session).generations_between(beneficiary, source)
        if level is None:
            logger.warning(
                f"Commission rejected: source {sourceId} is not in the downline "
                f"of beneficiary {beneficiaryId}"
            )
            return None

        if level > rank.eligible_depth:
            logger.info(
                f"Commission rejected: source {sourceId} is {level} generations below "
                f"beneficiary {beneficiaryId}, rank {rank.rank_key} pays "
                f"{rank.eligible_depth}"
            )
            return None

        try:
            entry = EarningEntry(
                beneficiaryID=beneficiaryId,
                sourceMemberID=sourceId,
                sourceType=sourceType,
                amountCents=amountCents,
                level=level,
                status=EARNING_PENDING,
                periodID=period.periodID
            )
            self.session.add(entry)
            self.session.flush()

            claim_event(self.session, eventKey, "commission.trigger", entry.entryID)
            self.session.commit()
        except DuplicateEvent as e:
            return self.session.get(EarningEntry, e.resultRef) if e.resultRef else None
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"Commission recorded: entry {entry.entryID}, {amountCents}¢ "
            f"{sourceType} for member {beneficiaryId} from {sourceId} "
            f"(level {level}, period {period.periodID})"
        )
        return entry

    async def _resolvePeriod(self, periodId: Optional[int]) -> Optional[Period]:
        if periodId is None:
            # Import here to avoid circular dependency
            from matrix_system.services.period_service import PeriodService
            return await PeriodService(self.session).ensureOpenPeriod()

        period = self.session.get(Period, periodId)
        if period is None:
            raise MatrixError(f"Period {periodId} not found")

        if period.status != PERIOD_OPEN:
            logger.warning(
                f"Commission rejected: period {periodId} is {period.status}, not open"
            )
            return None

        return period

    # ============================================================
    # SETTLE
    # ============================================================

    async def settle(self, periodId: int) -> Dict:
        """
        Settle all pending entries of a period against weekly caps.

        Each beneficiary is processed in its own short transaction with the
        beneficiary row locked, so the running period total cannot race and
        an interrupted settle resumes with the remaining pending entries.

        Args:
            periodId: Period ID

        Returns:
            Statistics dict
        """
        results = self._emptyResults(periodId)

        try:
            self._checkNotSettled(periodId)
        except PeriodAlreadySettled as e:
            logger.info(f"{e}, settle is a no-op")
            results["alreadySettled"] = True
            return results

        await self._settleBeneficiaries(periodId, self._pendingBeneficiaries(periodId), results)

        logger.info(
            f"Settle period {periodId}: beneficiaries={results['beneficiaries']}, "
            f"eligible={results['eligible']} ({results['eligibleCents']}¢), "
            f"capped={results['capped']} ({results['cappedCents']}¢), "
            f"errors={results['errors']}, halted={len(results['halted'])}"
        )
        return results

    async def resettleHalted(self, periodId: int, memberIds: Iterable[int]) -> Dict:
        """
        Settle the pending entries that halted members left behind.

        Allowed on settled periods: only the given members are touched, and
        their entries are still pending, so the cap is applied exactly once.
        Members whose rank is still not configured stay halted.

        Args:
            periodId: Period ID
            memberIds: Members halted in that period

        Returns:
            Statistics dict; "resolved" lists members whose entries settled
        """
        if self.session.get(Period, periodId) is None:
            raise MatrixError(f"Period {periodId} not found")

        results = self._emptyResults(periodId)
        wanted = set(memberIds)
        beneficiaryIds = [
            memberId for memberId in self._pendingBeneficiaries(periodId) if memberId in wanted
        ]

        await self._settleBeneficiaries(periodId, beneficiaryIds, results)

        if beneficiaryIds:
            logger.info(
                f"Re-settle period {periodId}: resolved={results['resolved']}, "
                f"still halted={results['halted']}, errors={results['errors']}"
            )
        return results

    @staticmethod
    def _emptyResults(periodId: int) -> Dict:
        return {
            "periodId": periodId,
            "alreadySettled": False,
            "beneficiaries": 0,
            "eligible": 0,
            "capped": 0,
            "eligibleCents": 0,
            "cappedCents": 0,
            "errors": 0,
            "halted": [],
            "resolved": [],
        }

    def _pendingBeneficiaries(self, periodId: int) -> List[int]:
        return [
            row[0] for row in self.session.query(EarningEntry.beneficiaryID).filter(
                EarningEntry.periodID == periodId,
                EarningEntry.status == EARNING_PENDING
            ).distinct().order_by(EarningEntry.beneficiaryID).all()
        ]

    async def _settleBeneficiaries(self, periodId: int, beneficiaryIds: List[int], results: Dict) -> None:
        for beneficiaryId in beneficiaryIds:
            try:
                settled = await self._settleBeneficiary(beneficiaryId, periodId)
                self.session.commit()

                results["beneficiaries"] += 1
                results["resolved"].append(beneficiaryId)
                for key in ("eligible", "capped", "eligibleCents", "cappedCents"):
                    results[key] += settled[key]

            except RankConfigurationError:
                self.session.rollback()
                results["halted"].append(beneficiaryId)
                logger.critical(
                    f"Settlement halted for member {beneficiaryId} in period {periodId}: "
                    f"rank configuration error, entries left pending"
                )

            except Exception as e:
                self.session.rollback()
                results["errors"] += 1
                logger.error(
                    f"Error settling member {beneficiaryId} in period {periodId}: {e}",
                    exc_info=True
                )

    def _checkNotSettled(self, periodId: int) -> None:
        period = self.session.get(Period, periodId)
        if period is None:
            raise MatrixError(f"Period {periodId} not found")
        if period.status == PERIOD_SETTLED:
            raise PeriodAlreadySettled(f"Period {periodId} already settled")

    async def _settleBeneficiary(self, beneficiaryId: int, periodId: int) -> Dict:
        member = self.session.query(Member).filter_by(
            memberID=beneficiaryId
        ).with_for_update().first()
        if member is None:
            raise UnknownMember(f"Beneficiary {beneficiaryId} not found")

        rank = await self.rankService.getRank(member)
        cap = rank.weekly_cap_cents

        running = self._sumCents(beneficiaryId, periodId, (EARNING_ELIGIBLE, EARNING_PAID))

        pending = self.session.query(EarningEntry).filter(
            EarningEntry.beneficiaryID == beneficiaryId,
            EarningEntry.periodID == periodId,
            EarningEntry.status == EARNING_PENDING
        ).order_by(EarningEntry.createdAt, EarningEntry.entryID).all()

        settled = {"eligible": 0, "capped": 0, "eligibleCents": 0, "cappedCents": 0}
        now = timeMachine.now

        for entry in pending:
            if running + entry.amountCents <= cap:
                entry.status = EARNING_ELIGIBLE
                running += entry.amountCents
                settled["eligible"] += 1
                settled["eligibleCents"] += entry.amountCents
            else:
                entry.status = EARNING_CAPPED
                settled["capped"] += 1
                settled["cappedCents"] += entry.amountCents
            entry.settledAt = now

        self.session.flush()

        logger.debug(
            f"Member {beneficiaryId} period {periodId}: cap {cap}¢, "
            f"payable {running}¢, {settled['capped']} entries capped"
        )
        return settled

    # ============================================================
    # PAYOUT
    # ============================================================

    async def markPaid(self, entryIds: Iterable[int]) -> Dict[str, int]:
        """
        Mark eligible entries as paid. Already-paid entries are no-ops.

        Args:
            entryIds: Entry IDs confirmed by the payout rail

        Returns:
            Dict with paid / alreadyPaid / skipped counts
        """
        ids = sorted(set(entryIds))
        results = {"paid": 0, "alreadyPaid": 0, "skipped": 0}

        if not ids:
            return results

        entries = {
            entry.entryID: entry
            for entry in self.session.query(EarningEntry).filter(
                EarningEntry.entryID.in_(ids)
            ).with_for_update().all()
        }

        now = timeMachine.now

        try:
            for entryId in ids:
                entry = entries.get(entryId)
                if entry is None:
                    logger.warning(f"markPaid: entry {entryId} not found")
                    results["skipped"] += 1
                elif entry.status == EARNING_PAID:
                    results["alreadyPaid"] += 1
                elif entry.status == EARNING_ELIGIBLE:
                    entry.status = EARNING_PAID
                    entry.paidAt = now
                    results["paid"] += 1
                else:
                    logger.warning(f"markPaid: entry {entryId} is {entry.status}, not payable")
                    results["skipped"] += 1

            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"markPaid: paid={results['paid']}, alreadyPaid={results['alreadyPaid']}, "
            f"skipped={results['skipped']}"
        )
        return results

    # ============================================================
    # BALANCES
    # ============================================================

    async def getTotals(self, memberId: int, periodId: Optional[int] = None) -> Dict[str, int]:
        """
        Sum of entry amounts per status.

        Returns:
            Dict with pending / eligible / capped / paid totals in cents
        """
        query = self.session.query(
            EarningEntry.status,
            func.coalesce(func.sum(EarningEntry.amountCents), 0)
        ).filter(EarningEntry.beneficiaryID == memberId)

        if periodId is not None:
            query = query.filter(EarningEntry.periodID == periodId)

        totals = {
            EARNING_PENDING: 0,
            EARNING_ELIGIBLE: 0,
            EARNING_CAPPED: 0,
            EARNING_PAID: 0,
        }
        for status, amount in query.group_by(EarningEntry.status).all():
            totals[status] = int(amount)

        return totals

    async def getRecentEntries(self, memberId: int, limit: int = 20) -> List[EarningEntry]:
        return self.session.query(EarningEntry).filter_by(
            beneficiaryID=memberId
        ).order_by(
            EarningEntry.createdAt.desc(),
            EarningEntry.entryID.desc()
        ).limit(limit).all()

    async def getEntries(
            self,
            memberId: int,
            periodId: Optional[int] = None,
            status: Optional[str] = None,
            sourceId: Optional[int] = None
    ) -> List[EarningEntry]:
        """
        Ledger rows of a beneficiary, newest first.

        Args:
            memberId: Beneficiary
            periodId: Only this period
            status: Only this status
            sourceId: Only entries generated by this member

        Raises:
            MatrixError: Unknown status filter
        """
        if status is not None and status not in EARNING_STATUSES:
            raise MatrixError(
                f"Unknown earning status '{status}', expected one of {', '.join(EARNING_STATUSES)}"
            )

        query = self.session.query(EarningEntry).filter(EarningEntry.beneficiaryID == memberId)

        if periodId is not None:
            query = query.filter(EarningEntry.periodID == periodId)
        if status is not None:
            query = query.filter(EarningEntry.status == status)
        if sourceId is not None:
            query = query.filter(EarningEntry.sourceMemberID == sourceId)

        return query.order_by(
            EarningEntry.createdAt.desc(),
            EarningEntry.entryID.desc()
        ).all()

    def _sumCents(self, memberId: int, periodId: int, statuses) -> int:
        return int(self.session.query(
            func.coalesce(func.sum(EarningEntry.amountCents), 0)
        ).filter(
            EarningEntry.beneficiaryID == memberId,
            EarningEntry.periodID == periodId,
            EarningEntry.status.in_(statuses)
        ).scalar())
