"""
Report matcher: links an ingested clinic report to the open referral it describes.

Scoring is a weighted combination of three components, each 0-100:
- patient name: order-insensitive token comparison with Levenshtein similarity
- visit date: proximity of the visit to the referral's creation
- clinic: same resolved clinic, or fuzzy clinic-name similarity

Components the report cannot provide (no visit date, no clinic) are left out
and the remaining weights are re-normalized. The matcher only writes the
report's routing fields; referrals and payments are never touched here.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from email.utils import parseaddr
from typing import List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from core.config import MATCH_AUTO_THRESHOLD, MATCH_REVIEW_THRESHOLD
from core.constants import (
    CLINIC_BOOST_MIN_SCORE,
    CLINIC_RESOLVE_MIN_SCORE,
    MATCH_CLINIC_WEIGHT,
    MATCH_DATE_FLOOR_SCORE,
    MATCH_DATE_FULL_SCORE_DAYS,
    MATCH_DATE_MAX_DAYS,
    MATCH_DATE_WEIGHT,
    MATCH_NAME_WEIGHT,
    MATCH_TOKEN_MIN_SIMILARITY,
)
from core.exceptions import ValidationError
from models import Clinic, ClinicReport, ClinicReportStatus, Referral
from services.referral_state_machine import OPEN_STATUSES
from shared_types import MatchCandidate, MatchDecision
from utils.datetime_utils import ensure_moscow

logger = logging.getLogger(__name__)

# Legal-form and generic words dropped before comparing clinic names
_CLINIC_STOP_WORDS = re.compile(r"\b(клиника|клиники|ооо|оао|зао|пао|ип)\b")
_QUOTES = re.compile(r"[«»\"'“”„]")


@dataclass(frozen=True)
class MatchPolicy:
    """Routing thresholds (percent)."""
    auto_threshold: int = MATCH_AUTO_THRESHOLD
    review_threshold: int = MATCH_REVIEW_THRESHOLD

    def __post_init__(self) -> None:
        if not 0 <= self.review_threshold <= self.auto_threshold <= 100:
            raise ValidationError(
                f"Invalid match thresholds: review={self.review_threshold}, auto={self.auto_threshold}",
                field="match_policy",
            )

    def route(self, score: int) -> ClinicReportStatus:
        if score >= self.auto_threshold:
            return ClinicReportStatus.AUTO_MATCHED
        return ClinicReportStatus.PENDING_REVIEW


def _round_percent(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> int:
    """Levenshtein similarity in percent."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 0
    return _round_percent((1 - Decimal(levenshtein(a, b)) / longest) * 100)


def normalize_name(value: str) -> str:
    """Case- and diacritic-insensitive form with collapsed whitespace ("Ёлкина  Анна" -> "елкина анна")."""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.casefold().split())


def normalize_clinic_name(value: str) -> str:
    cleaned = _QUOTES.sub(" ", normalize_name(value))
    cleaned = _CLINIC_STOP_WORDS.sub(" ", cleaned)
    return " ".join(cleaned.split())


def compare_names(name1: str, name2: str) -> int:
    """
    Compare two full names, token order ignored.

    Each token of the first name is paired with its most similar unused token
    of the second; pairs below the per-token floor do not count. The average
    pair similarity is weighted by the share of tokens that found a pair.
    """
    n1 = normalize_name(name1)
    n2 = normalize_name(name2)
    if not n1 or not n2:
        return 0
    if n1 == n2:
        return 100

    tokens1 = n1.split(" ")
    tokens2 = n2.split(" ")
    used: set[int] = set()
    matched = 0
    total = 0

    for token in tokens1:
        best_score = 0
        best_index = -1
        for index, other in enumerate(tokens2):
            if index in used:
                continue
            score = similarity(token, other)
            if score > best_score:
                best_score = score
                best_index = index
        if best_index >= 0 and best_score >= MATCH_TOKEN_MIN_SIMILARITY:
            used.add(best_index)
            matched += 1
            total += best_score

    if matched == 0:
        return 0
    coverage = Decimal(matched) / max(len(tokens1), len(tokens2))
    return _round_percent(Decimal(total) / matched * coverage)


def compare_clinic_names(name1: str, name2: str) -> int:
    """Clinic-name similarity; one name containing the other scores 90."""
    n1 = normalize_clinic_name(name1)
    n2 = normalize_clinic_name(name2)
    if not n1 or not n2:
        return 0
    if n1 == n2:
        return 100
    if n1 in n2 or n2 in n1:
        return 90
    return similarity(n1, n2)


def score_visit_date(visit_date: date, referral_created: date) -> int:
    """
    Score how plausible a visit date is for a referral created on referral_created.

    100 within the full-score window, then linear decay to the floor score at
    the maximum window, 0 beyond it. A visit before the referral scores 0.
    """
    days = (visit_date - referral_created).days
    if days < 0 or days > MATCH_DATE_MAX_DAYS:
        return 0
    if days <= MATCH_DATE_FULL_SCORE_DAYS:
        return 100
    span = MATCH_DATE_MAX_DAYS - MATCH_DATE_FULL_SCORE_DAYS
    decay = Decimal(100 - MATCH_DATE_FLOOR_SCORE) * (days - MATCH_DATE_FULL_SCORE_DAYS) / span
    return _round_percent(Decimal(100) - decay)


def _referral_clinic_name(referral: Referral) -> Optional[str]:
    if referral.clinic is not None:
        return referral.clinic.name
    return referral.clinic_name


def score_candidate(
    referral: Referral,
    patient_name: str,
    visit_date: Optional[date],
    clinic_name: Optional[str],
    clinic_id: Optional[int],
) -> MatchCandidate:
    """Score one referral against the report's extracted fields."""
    name_score = compare_names(patient_name, referral.patient_full_name)

    date_score: Optional[int] = None
    if visit_date is not None:
        created = ensure_moscow(referral.created_at)
        assert created is not None
        date_score = score_visit_date(visit_date, created.date())

    clinic_score: Optional[int] = None
    if clinic_id is not None and referral.clinic_id == clinic_id:
        clinic_score = 100
    elif clinic_name:
        referral_clinic = _referral_clinic_name(referral)
        if referral_clinic:
            clinic_score = compare_clinic_names(clinic_name, referral_clinic)
            if clinic_score < CLINIC_BOOST_MIN_SCORE:
                clinic_score = 0

    weighted = MATCH_NAME_WEIGHT * name_score
    weights = MATCH_NAME_WEIGHT
    if date_score is not None:
        weighted += MATCH_DATE_WEIGHT * date_score
        weights += MATCH_DATE_WEIGHT
    if clinic_score is not None:
        weighted += MATCH_CLINIC_WEIGHT * clinic_score
        weights += MATCH_CLINIC_WEIGHT

    # A name that shares nothing is never rescued by date and clinic alone
    score = _round_percent(weighted / weights) if name_score > 0 else 0

    return MatchCandidate(
        referral_id=referral.id,
        score=score,
        name_score=name_score,
        date_score=date_score,
        clinic_score=clinic_score,
    )


def rank_candidates(
    referrals: Sequence[Referral],
    patient_name: str,
    visit_date: Optional[date],
    clinic_name: Optional[str],
    clinic_id: Optional[int],
) -> List[MatchCandidate]:
    """Score every referral; best first, ties by earliest creation, then lowest id."""
    created_by_id = {r.id: ensure_moscow(r.created_at) for r in referrals}
    candidates = [
        score_candidate(referral, patient_name, visit_date, clinic_name, clinic_id)
        for referral in referrals
    ]
    candidates.sort(key=lambda c: (-c.score, created_by_id[c.referral_id], c.referral_id))
    return candidates


def decide(candidates: Sequence[MatchCandidate], policy: MatchPolicy) -> MatchDecision:
    """Apply the routing policy to ranked candidates."""
    if not candidates:
        return MatchDecision(status=ClinicReportStatus.PENDING_REVIEW, confidence=0)

    best = candidates[0]
    status = policy.route(best.score)
    if status == ClinicReportStatus.AUTO_MATCHED:
        return MatchDecision(
            status=status,
            confidence=best.score,
            linked_referral_id=best.referral_id,
            candidates=list(candidates),
        )
    if best.score >= policy.review_threshold:
        return MatchDecision(
            status=status,
            confidence=best.score,
            suggested_referral_id=best.referral_id,
            candidates=list(candidates),
        )
    return MatchDecision(status=status, confidence=best.score, candidates=list(candidates))


class ReportMatcher:
    """Database-facing matcher. Reads referrals, writes only the report."""

    def __init__(self, policy: Optional[MatchPolicy] = None):
        self.policy = policy or MatchPolicy()

    @staticmethod
    def candidate_pool(db: Session, clinic_id: Optional[int]) -> List[Referral]:
        """
        Open, unlinked referrals a report may describe.

        With a resolved clinic, the pool is that clinic's referrals plus
        referrals with no clinic chosen; otherwise all clinics are searched.
        """
        query = (
            select(Referral)
            .options(selectinload(Referral.clinic))
            .where(
                Referral.status.in_(OPEN_STATUSES),
                Referral.linked_report_id.is_(None),
            )
        )
        if clinic_id is not None:
            query = query.where(or_(Referral.clinic_id == clinic_id, Referral.clinic_id.is_(None)))
        return list(db.scalars(query))

    def evaluate(self, db: Session, report: ClinicReport) -> MatchDecision:
        """Score a report against the current pool without changing anything."""
        if not report.patient_name or not report.patient_name.strip():
            return MatchDecision(status=ClinicReportStatus.PENDING_REVIEW, confidence=0)
        pool = self.candidate_pool(db, report.clinic_id)
        ranked = rank_candidates(
            pool, report.patient_name, report.visit_date, report.clinic_name, report.clinic_id
        )
        return decide(ranked, self.policy)

    def route_report(self, db: Session, report: ClinicReport) -> MatchDecision:
        """
        Score a newly ingested report and record the routing on it.

        Only the report's status, linked/suggested referral and match confidence
        are written. Does not commit.
        """
        decision = self.evaluate(db, report)
        report.status = decision.status
        report.match_confidence = decision.confidence
        report.linked_referral_id = decision.linked_referral_id
        report.suggested_referral_id = decision.suggested_referral_id
        db.flush()

        logger.info(
            f"Report {report.id} routed {decision.status.value} "
            f"(confidence {decision.confidence}, linked={decision.linked_referral_id}, "
            f"suggested={decision.suggested_referral_id})"
        )
        return decision


def extract_email_address(sender: str) -> str:
    """'Clinic <Info@Clinic.ru>' -> 'info@clinic.ru'."""
    _, address = parseaddr(sender or "")
    return address.strip().lower()


def resolve_clinic(db: Session, email_from: str, clinic_name: Optional[str]) -> Optional[Clinic]:
    """
    Attribute a report to a clinic.

    The sender address wins when it is registered for a clinic; otherwise the
    extracted clinic name is matched fuzzily and kept only above the minimum score.
    """
    clinics = list(db.scalars(select(Clinic).where(Clinic.is_active.is_(True))))

    address = extract_email_address(email_from)
    if address:
        for clinic in clinics:
            if address in {e.strip().lower() for e in (clinic.report_emails or [])}:
                return clinic

    if not clinic_name:
        return None
    best: Optional[Clinic] = None
    best_score = 0
    for clinic in clinics:
        score = compare_clinic_names(clinic_name, clinic.name)
        if score > best_score:
            best, best_score = clinic, score
    if best_score < CLINIC_RESOLVE_MIN_SCORE:
        return None
    return best
