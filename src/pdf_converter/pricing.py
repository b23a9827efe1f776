"""Per-page pricing.

``price`` is shared verbatim by the cost preview endpoint and by
``UsageLedger.reserve`` so an estimate and a charge can never disagree.
"""

from pdf_converter.schemas import Quote


def price(
    page_count: int,
    free_pages_remaining: int,
    credit_balance_cents: int,
    cost_per_page_cents: int,
    subscription_pages_remaining: int = 0,
) -> Quote:
    if page_count < 0:
        raise ValueError("page_count must be >= 0")
    if cost_per_page_cents <= 0:
        raise ValueError("cost_per_page_cents must be > 0")

    free_used = min(page_count, max(free_pages_remaining, 0))
    left = page_count - free_used
    sub_used = min(left, max(subscription_pages_remaining, 0))
    paid = left - sub_used
    cost = paid * cost_per_page_cents

    return Quote(
        page_count=page_count,
        free_pages_used=free_used,
        subscription_pages_used=sub_used,
        paid_pages=paid,
        total_cost_cents=cost,
        affordable=paid == 0 or cost <= credit_balance_cents,
    )


def affordable_pages(
    free_pages_remaining: int,
    credit_balance_cents: int,
    cost_per_page_cents: int,
    subscription_pages_remaining: int = 0,
) -> int:
    if cost_per_page_cents <= 0:
        raise ValueError("cost_per_page_cents must be > 0")
    paid = max(credit_balance_cents, 0) // cost_per_page_cents
    return max(free_pages_remaining, 0) + max(subscription_pages_remaining, 0) + paid


def split_refund(free_pages: int, subscription_pages: int, credit_pages: int, refund: int) -> tuple[int, int, int]:
    """Split ``refund`` pages over a debit, most expensive bucket first.

    Returns ``(free, subscription, credit)`` pages to hand back.
    """
    if refund > free_pages + subscription_pages + credit_pages:
        raise ValueError("refund exceeds debited pages")
    credit = min(refund, credit_pages)
    sub = min(refund - credit, subscription_pages)
    free = refund - credit - sub
    return free, sub, credit
