from datetime import datetime, timedelta

from models import NFTRecord, NFTStatus, PurchaseAttempt, PurchaseStep, db


class TransactionTracker:
    """
    Persisted log of purchase attempts and the steps taken for each.

    Every reservation, mint, offer and payment is written here as it happens,
    so a crash mid-batch leaves enough behind for the reconciliation job to
    put reserved records back on sale and refund the buyer.
    """

    def start_attempt(self, release, buyer_address, track_price, total_price, regime):
        attempt = PurchaseAttempt(
            release_id=release.id,
            buyer_address=buyer_address,
            track_price=track_price,
            total_price=total_price,
            mint_regime=regime.value,
            status='in_progress',
        )
        db.session.add(attempt)
        db.session.commit()
        return attempt

    def record_step(self, attempt, kind, track_id=None, nft_record_id=None,
                    reference=None, status='done', detail=None, commit=True):
        step = PurchaseStep(
            attempt_id=attempt.id,
            kind=kind,
            track_id=track_id,
            nft_record_id=nft_record_id,
            reference=reference,
            status=status,
            detail=detail,
        )
        db.session.add(step)
        if commit:
            db.session.commit()
        return step

    def reserved_record_ids(self, attempt):
        """Ids of every NFTRecord this attempt reserved, discovered or minted."""
        steps = PurchaseStep.query.filter(
            PurchaseStep.attempt_id == attempt.id,
            PurchaseStep.kind.in_(('reserve', 'discover', 'mint')),
            PurchaseStep.status == 'done',
            PurchaseStep.nft_record_id.isnot(None),
        ).all()
        ids = [s.nft_record_id for s in steps]
        # records can also be tied to the attempt without a step if a crash hit between writes
        held = NFTRecord.query.filter_by(attempt_id=attempt.id, status=NFTStatus.PENDING).all()
        for record in held:
            if record.id not in ids:
                ids.append(record.id)
        return ids

    def mark_listed(self, attempt, artist_payment_tx_hash=None):
        attempt.status = 'listed'
        attempt.artist_payment_tx_hash = artist_payment_tx_hash
        db.session.commit()

    def mark_failed(self, attempt, reason, failed_track_id=None):
        attempt.status = 'failed'
        attempt.failure_reason = reason
        attempt.failed_track_id = failed_track_id
        db.session.commit()

    def mark_refund(self, attempt, tx_hash=None):
        attempt.refund_status = 'refunded' if tx_hash else 'refund_failed'
        attempt.refund_tx_hash = tx_hash
        db.session.commit()

    def mark_compensated_steps(self, attempt):
        PurchaseStep.query.filter(
            PurchaseStep.attempt_id == attempt.id,
            PurchaseStep.kind.in_(('reserve', 'discover', 'mint', 'offer')),
            PurchaseStep.status == 'done',
        ).update({'status': 'compensated'}, synchronize_session=False)

    def complete_if_settled(self, attempt_id):
        """Flip a listed attempt to completed once none of its records is pending."""
        attempt = db.session.get(PurchaseAttempt, attempt_id)
        if attempt is None or attempt.status != 'listed':
            return False
        remaining = NFTRecord.query.filter_by(attempt_id=attempt_id, status=NFTStatus.PENDING).count()
        if remaining:
            return False
        attempt.status = 'completed'
        db.session.commit()
        return True

    def stale_attempts(self, max_age_minutes, now=None):
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=max_age_minutes)
        return PurchaseAttempt.query.filter(
            PurchaseAttempt.status == 'in_progress',
            PurchaseAttempt.created_at < cutoff,
        ).order_by(PurchaseAttempt.created_at).all()

    def get_attempt_status(self, attempt_id):
        attempt = db.session.get(PurchaseAttempt, attempt_id)
        if attempt is None:
            return {'error': 'Purchase attempt not found'}

        return {
            'id': attempt.id,
            'releaseId': attempt.release_id,
            'buyerAddress': attempt.buyer_address,
            'status': attempt.status,
            'mintRegime': attempt.mint_regime,
            'totalPrice': float(attempt.total_price),
            'failureReason': attempt.failure_reason,
            'refundStatus': attempt.refund_status,
            'refundTxHash': attempt.refund_tx_hash,
            'artistPaymentTxHash': attempt.artist_payment_tx_hash,
            'createdAt': attempt.created_at.isoformat() if attempt.created_at else None,
            'steps': [
                {
                    'kind': s.kind,
                    'trackId': s.track_id,
                    'nftRecordId': s.nft_record_id,
                    'reference': s.reference,
                    'status': s.status,
                    'detail': s.detail,
                }
                for s in attempt.steps
            ],
        }
