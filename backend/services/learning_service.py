"""
Learning writer — after the user approves a receipt, write each corrected
coded item back to the verified-product store so the next receipt from the
same chain reconciles it as ``verified``.

Learning is best-effort: a failed write is logged and counted, and never
fails the approval that triggered it.
"""
import logging

from models.schemas import AnnotatedItem, LearningReport
from services.reconcile_service import lookup_code
from services.verified_products import VerifiedProductStore, VerifiedProductStoreError

logger = logging.getLogger("basket.learning")


def is_learnable(item: AnnotatedItem) -> bool:
    """Not a discount, has a usable product code, has a name."""
    return (
        not item.is_discount
        and lookup_code(item) is not None
        and bool(item.item_name.strip())
    )


async def learn(
    confirmed_items: list[AnnotatedItem],
    store_chain: str,
    actor: str,
    store: VerifiedProductStore,
) -> LearningReport:
    report = LearningReport()
    # Keys are written one at a time; each write is a single atomic
    # increment-or-insert, so the check and the write can't interleave.
    for item in confirmed_items:
        if not is_learnable(item):
            continue
        report.eligible += 1
        code = lookup_code(item)
        try:
            await store.record_confirmation(
                code, store_chain, item.item_name.strip(),
                brand=item.brand, size=item.size, category=item.category,
                actor=actor,
            )
            report.written += 1
        except VerifiedProductStoreError as e:
            report.failed += 1
            logger.error("Learning write failed for %s@%s: %s", code, store_chain, e)

    logger.info("Learned %d/%d item(s) @ %s for %s",
                report.written, report.eligible, store_chain, actor)
    return report
