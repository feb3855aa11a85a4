"""Rollback for failed album purchases: release every reservation, refund the buyer."""

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from errors import BrokerError, CompensationError
from models import NFTRecord, NFTStatus, PurchaseStep, db


def release_reservations(attempt, record_ids):
    """Put every record held by ``attempt`` back on sale. Returns the number released."""
    if not record_ids:
        return 0
    released = NFTRecord.query.filter(
        NFTRecord.id.in_(record_ids),
        NFTRecord.attempt_id == attempt.id,
        NFTRecord.status == NFTStatus.PENDING,
    ).update({'status': NFTStatus.AVAILABLE, 'attempt_id': None}, synchronize_session=False)
    db.session.commit()
    return released


def cancel_issued_offers(ledger, attempt):
    """Withdraw sell offers this attempt already issued so the buyer cannot claim them after a refund."""
    offer_ids = [
        step.reference for step in PurchaseStep.query.filter_by(attempt_id=attempt.id, kind='offer').all()
        if step.reference
    ]
    if not offer_ids:
        return 0
    try:
        ledger.cancel_offers(offer_ids)
    except BrokerError as e:
        current_app.logger.error(f'Could not cancel {len(offer_ids)} offer(s) for attempt {attempt.id}: {e}')
        return 0
    current_app.logger.info(f'Cancelled {len(offer_ids)} offer(s) for attempt {attempt.id}')
    return len(offer_ids)


def refund_buyer(ledger, attempt, reason):
    """Refund the full amount collected. Returns the refund hash or None."""
    current_app.logger.info(
        f'Refunding buyer: {attempt.buyer_address} {attempt.total_price} XRP - {reason}')
    try:
        tx_hash = ledger.send_payment(attempt.buyer_address, attempt.total_price, f'Refund: {reason}')
    except BrokerError as e:
        error = CompensationError(f'Refund failed for attempt {attempt.id}: {e}')
        current_app.logger.error(str(error))
        return None

    current_app.logger.info(f'Refund sent: {tx_hash}')
    return tx_hash


def compensate(attempt, ledger, tracker, reason, failed_track_id=None):
    """
    Undo a purchase attempt.

    All records reserved so far are released, including those of tracks that
    had already succeeded, then the buyer gets the full batch price back.
    Failures inside compensation are logged and never retried here.
    Returns the refund transaction hash, or None if the refund failed.
    """
    db.session.rollback()

    cancel_issued_offers(ledger, attempt)

    try:
        record_ids = tracker.reserved_record_ids(attempt)
        released = release_reservations(attempt, record_ids)
        tracker.mark_compensated_steps(attempt)
        tracker.mark_failed(attempt, reason, failed_track_id)
        current_app.logger.info(f'Released {released} reserved NFT record(s) for attempt {attempt.id}')
    except SQLAlchemyError as e:
        db.session.rollback()
        error = CompensationError(f'Could not release reservations for attempt {attempt.id}: {e}')
        current_app.logger.error(str(error))

    refund_hash = refund_buyer(ledger, attempt, reason)

    try:
        tracker.record_step(attempt, 'refund', reference=refund_hash,
                            status='done' if refund_hash else 'failed', detail=reason, commit=False)
        tracker.mark_refund(attempt, refund_hash)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f'Could not record refund for attempt {attempt.id}: {e}')

    return refund_hash
