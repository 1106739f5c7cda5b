"""Monthly redemption insights and card ROI."""
import logging
import math
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from app.schemas.insights import (
    CardROI,
    DetailStatus,
    FilterCard,
    InsightsResponse,
    MonthlyRedemptionSummary,
    PerkBucket,
    PerkDetail,
    ProgressBreakdown,
    RedemptionCalculations,
    YearSection,
)
from app.schemas.perk import OwnedBenefit, OwnedCard, PerkStatus, RedemptionEvent
from app.services.benefit_periods import PERIOD_LABELS, as_date, as_utc, get_benefit_cycle_bounds

logger = logging.getLogger(__name__)

# Buckets that count toward the completion score.
SCORED_BUCKETS = (PerkBucket.MONTHLY, PerkBucket.DUE_THIS_MONTH)


def classify_perk(perk: PerkDetail, is_current_month: bool) -> PerkBucket:
    """Put a perk into exactly one display bucket; first matching rule wins."""
    if perk.period == "monthly":
        return PerkBucket.MONTHLY
    if perk.expires_this_month:
        return PerkBucket.DUE_THIS_MONTH
    if is_current_month and perk.expires_next_month:
        return PerkBucket.EXPIRING_NEXT_MONTH
    if perk.status in (DetailStatus.REDEEMED, DetailStatus.PARTIAL):
        return PerkBucket.BONUS_EARLY if is_current_month else PerkBucket.SUCCESSFULLY_REDEEMED
    return PerkBucket.NOT_DUE


def is_relevant(perk: PerkDetail, is_current_month: bool) -> bool:
    return classify_perk(perk, is_current_month) is not PerkBucket.NOT_DUE


def _sum_values(perks: Iterable[PerkDetail]) -> RedemptionCalculations:
    totals = RedemptionCalculations()
    for perk in perks:
        if perk.status is DetailStatus.REDEEMED:
            totals.redeemed_value += perk.value
        elif perk.status is DetailStatus.PARTIAL:
            totals.partial_value += perk.partial_value or 0.0
        elif perk.status is DetailStatus.AVAILABLE:
            totals.available_value += perk.value
        elif perk.status is DetailStatus.MISSED:
            totals.missed_value += perk.value
        totals.potential_value += perk.value
    totals.total_redeemed_value = totals.redeemed_value + totals.partial_value
    return totals


def calculate_redemption_values(
    summary: MonthlyRedemptionSummary,
    only_relevant: bool = False,
    is_current_month: bool = False,
) -> RedemptionCalculations:
    """Sum perk values by status, optionally only over perks that matter this month."""
    perks = summary.perk_details
    if only_relevant:
        perks = [perk for perk in perks if is_relevant(perk, is_current_month)]
    return _sum_values(perks)


def calculate_monthly_perks_only(summary: MonthlyRedemptionSummary) -> RedemptionCalculations:
    """Sums over monthly perks alone; drives the fee coverage figure."""
    return _sum_values(perk for perk in summary.perk_details if perk.period == "monthly")


def _scored_perks(summary: MonthlyRedemptionSummary, is_current_month: bool) -> list[PerkDetail]:
    return [
        perk for perk in summary.perk_details
        if classify_perk(perk, is_current_month) in SCORED_BUCKETS
    ]


def calculate_performance_score(summary: MonthlyRedemptionSummary, is_current_month: bool) -> int:
    """Completion score 0-100 for the month; a partial perk counts half.

    A month with nothing to act on scores 100.
    """
    actionable = _scored_perks(summary, is_current_month)
    if not actionable:
        return 100
    redeemed = sum(1 for perk in actionable if perk.status is DetailStatus.REDEEMED)
    partial = sum(1 for perk in actionable if perk.status is DetailStatus.PARTIAL)
    # Half-up, so 62.5 shows as 63
    return math.floor((redeemed + 0.5 * partial) / len(actionable) * 100 + 0.5)


def calculate_progress_breakdown(summary: MonthlyRedemptionSummary, is_current_month: bool) -> ProgressBreakdown:
    """Share of the actionable value in each progress bar segment.

    The unused part of a partial perk is still available in the current
    month and missed in a past one. No actionable value shows as fully
    redeemed.
    """
    actionable = _scored_perks(summary, is_current_month)
    total = sum(perk.value for perk in actionable)
    if total <= 0:
        return ProgressBreakdown(redeemed=100.0)

    totals = _sum_values(actionable)
    leftover = sum(
        perk.value - (perk.partial_value or 0.0)
        for perk in actionable
        if perk.status is DetailStatus.PARTIAL
    )
    available = totals.available_value + (leftover if is_current_month else 0.0)
    missed = totals.missed_value + (0.0 if is_current_month else leftover)
    return ProgressBreakdown(
        redeemed=totals.redeemed_value / total * 100,
        partial=totals.partial_value / total * 100,
        available=available / total * 100,
        missed=missed / total * 100,
    )


def calculate_card_roi(card_id: str, name: str, total_redeemed: float, annual_fee: float) -> CardROI:
    if annual_fee > 0:
        roi = total_redeemed / annual_fee * 100
    else:
        roi = 100.0 if total_redeemed > 0 else 0.0
    return CardROI(
        id=card_id,
        name=name,
        total_redeemed=total_redeemed,
        annual_fee=annual_fee,
        roi_percentage=roi,
    )


def rank_card_rois(rois: Iterable[CardROI]) -> list[CardROI]:
    """Best ROI first; equal ROIs keep their input order."""
    return sorted(rois, key=lambda roi: roi.roi_percentage, reverse=True)


def _month_end(month_start: date) -> date:
    return month_start + relativedelta(months=1) - timedelta(days=1)


def _owned_benefit_ids(cards: Iterable[OwnedCard]) -> set[str]:
    return {benefit.benefit_id for card in cards for benefit in card.benefits}


def _events_between(events: Iterable[RedemptionEvent], start: date, end: date) -> list[RedemptionEvent]:
    return [event for event in events if start <= as_date(event.redemption_date) <= end]


def _build_detail(
    card: OwnedCard,
    benefit: OwnedBenefit,
    benefit_events: list[RedemptionEvent],
    month_start: date,
    month_end: date,
    cutoff: date,
    is_current_month: bool,
) -> PerkDetail | None:
    period = PERIOD_LABELS.get(benefit.period_months)
    if period is None:
        # Rolling and period-less perks have no monthly cadence to report on
        return None

    cycle_start, cycle_end = get_benefit_cycle_bounds(
        benefit.period_months, month_start, benefit.reset_type, card.card_anniversary
    )
    expires_this_month = cycle_end <= month_end
    expires_next_month = not expires_this_month and cycle_end <= _month_end(month_start + relativedelta(months=1))

    cycle_events = _events_between(benefit_events, cycle_start, min(cycle_end, cutoff))
    redeemed_in_month = bool(_events_between(cycle_events, month_start, cutoff))

    partial_value = None
    if cycle_events:
        latest = max(cycle_events, key=lambda event: as_utc(event.redemption_date))
        if latest.status is PerkStatus.REDEEMED:
            status = DetailStatus.REDEEMED
        else:
            status = DetailStatus.PARTIAL
            partial_value = min(sum(event.value_redeemed for event in cycle_events), benefit.value)
    elif not is_current_month and (benefit.period_months == 1 or expires_this_month):
        status = DetailStatus.MISSED
    else:
        status = DetailStatus.AVAILABLE

    if period != "monthly" and not (
        expires_this_month
        or (is_current_month and expires_next_month)
        or redeemed_in_month
    ):
        return None

    return PerkDetail(
        id=benefit.benefit_id,
        name=benefit.name,
        card_id=card.card_id,
        value=benefit.value,
        status=status,
        period=period,
        expires_this_month=expires_this_month,
        expires_next_month=expires_next_month,
        partial_value=partial_value,
    )


def build_monthly_summary(
    cards: list[OwnedCard],
    events: list[RedemptionEvent],
    month_start: date,
    today: date,
) -> MonthlyRedemptionSummary:
    """Summarize one calendar month from the ledger.

    Events after today are ignored, so the current month reflects what has
    happened so far. Cards added after the month ended are left out.
    """
    month_start = month_start.replace(day=1)
    month_end = _month_end(month_start)
    cutoff = min(month_end, today)
    is_current_month = (month_start.year, month_start.month) == (today.year, today.month)

    cards = [card for card in cards if card.added_on is None or card.added_on <= month_end]
    owned_ids = _owned_benefit_ids(cards)
    events_by_benefit: dict[str, list[RedemptionEvent]] = defaultdict(list)
    for event in events:
        if event.perk_definition_id in owned_ids:
            events_by_benefit[event.perk_definition_id].append(event)

    details = []
    for card in cards:
        for benefit in card.benefits:
            detail = _build_detail(
                card,
                benefit,
                events_by_benefit.get(benefit.benefit_id, []),
                month_start,
                month_end,
                cutoff,
                is_current_month,
            )
            if detail is not None:
                details.append(detail)

    month_events = _events_between(
        (event for benefit_events in events_by_benefit.values() for event in benefit_events),
        month_start,
        cutoff,
    )
    monthly = [detail for detail in details if detail.period == "monthly"]
    summary = MonthlyRedemptionSummary(
        month_year=month_start.strftime("%B %Y"),
        month_key=month_start.strftime("%Y-%m"),
        total_redeemed_value=sum(event.value_redeemed for event in month_events),
        perks_redeemed_count=sum(
            1 for detail in details if detail.status in (DetailStatus.REDEEMED, DetailStatus.PARTIAL)
        ),
        perks_missed_count=sum(1 for detail in details if detail.status is DetailStatus.MISSED),
        card_fees_proportion=sum(card.annual_fee for card in cards) / 12,
        all_monthly_perks_redeemed=bool(monthly) and all(
            detail.status is DetailStatus.REDEEMED for detail in monthly
        ),
        perk_details=details,
    )
    summary.total_potential_value = calculate_redemption_values(
        summary, only_relevant=True, is_current_month=is_current_month
    ).potential_value
    logger.debug(
        f"{summary.month_key}: {len(details)} perks, ${summary.total_redeemed_value:.2f} redeemed "
        f"of ${summary.total_potential_value:.2f}"
    )
    return summary


def calculate_current_streak(summaries: list[MonthlyRedemptionSummary], today: date) -> int:
    """Consecutive months, newest first, with at least one redemption.

    The current month only extends the streak; an empty one does not break it.
    """
    current_key = today.strftime("%Y-%m")
    streak = 0
    for summary in summaries:
        if summary.total_redeemed_value > 0:
            streak += 1
        elif summary.month_key == current_key:
            continue
        else:
            break
    return streak


def build_insights(
    cards: list[OwnedCard],
    events: list[RedemptionEvent],
    today: date,
    months: int = 6,
    card_ids: list[str] | None = None,
) -> InsightsResponse:
    """Monthly summaries, card ROIs and streak for the last `months` months."""
    selected = [card for card in cards if not card_ids or card.card_id in card_ids]
    current_month = today.replace(day=1)
    window_start = current_month - relativedelta(months=months - 1)

    summaries = [
        build_monthly_summary(selected, events, current_month - relativedelta(months=offset), today)
        for offset in range(months)
    ]

    year_sections: list[YearSection] = []
    for summary in summaries:
        year = summary.month_key[:4]
        if not year_sections or year_sections[-1].year != year:
            year_sections.append(YearSection(year=year, data=[]))
        year_sections[-1].data.append(summary)

    window_events = _events_between(events, window_start, today)
    redeemed_by_benefit: dict[str, float] = defaultdict(float)
    activity_by_benefit: dict[str, int] = defaultdict(int)
    for event in window_events:
        redeemed_by_benefit[event.perk_definition_id] += event.value_redeemed
        activity_by_benefit[event.perk_definition_id] += 1

    rois = [
        calculate_card_roi(
            card.card_id,
            card.name,
            sum(redeemed_by_benefit[benefit.benefit_id] for benefit in card.benefits),
            card.annual_fee,
        )
        for card in selected
    ]
    filter_cards = [
        FilterCard(
            id=card.card_id,
            name=card.name,
            activity_count=sum(activity_by_benefit[benefit.benefit_id] for benefit in card.benefits),
        )
        for card in cards
    ]

    return InsightsResponse(
        year_sections=year_sections,
        card_rois=rank_card_rois(rois),
        available_cards_for_filter=filter_cards,
        current_streak=calculate_current_streak(summaries, today),
    )
