from __future__ import annotations

import logging
import re

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.models import Sale, SequenceCounter

SALE_SEQUENCE = "sale"
SALE_PREFIX = "SALE-"
_SALE_REFERENCE = re.compile(r"^SALE-(\d+)$")

logger = logging.getLogger(__name__)


def format_sale_reference(number: int) -> str:
    return f"{SALE_PREFIX}{number:05d}"


def _highest_existing_suffix(db: Session) -> int:
    highest = 0
    for (reference,) in db.query(Sale.reference).filter(Sale.reference.like(f"{SALE_PREFIX}%")):
        match = _SALE_REFERENCE.match(reference or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def _locked_counter(db: Session, name: str):
    return db.query(SequenceCounter).filter_by(name=name).with_for_update().first()


def next_value(db: Session, name: str, seed=None) -> int:
    """
    Increment the named counter row and return its new value.

    The row is read with FOR UPDATE so concurrent creators queue on it until
    the surrounding transaction ends. Nothing is committed here: if the caller
    rolls back, the number is handed out again.

    The first use inserts the row inside a savepoint. When another
    transaction inserted it first, the savepoint is dropped and the
    committed row is locked and used instead.
    """
    counter = _locked_counter(db, name)
    if counter is None:
        initial = seed(db) if seed else 0
        try:
            with db.begin_nested():
                db.add(SequenceCounter(name=name, value=initial))
                db.flush()
        except IntegrityError:
            logger.info("Sequence %s was created concurrently, reusing it", name)
        counter = _locked_counter(db, name)
    counter.value = (counter.value or 0) + 1
    db.flush()
    return counter.value


def next_sale_reference(db: Session) -> str:
    number = next_value(db, SALE_SEQUENCE, seed=_highest_existing_suffix)
    reference = format_sale_reference(number)
    logger.debug("Allocated sale reference %s", reference)
    return reference


__all__ = ["format_sale_reference", "next_value", "next_sale_reference"]
