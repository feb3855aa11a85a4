"""
Album purchase orchestrator.

The buyer has already paid the platform for every track. One call then:

1. reserves one token per track (reuse, legacy discovery or lazy mint),
2. lists each token to the buyer with a nominal sell offer,
3. pays the artist their share.

Tracks are processed one after another. If any track fails, every
reservation made so far is released and the buyer is refunded in full.
"""

from decimal import Decimal

from flask import current_app
from xrpl.core.addresscodec import is_valid_classic_address

from compensator import compensate
from errors import (
    BrokerError,
    ConfigurationError,
    InvalidRequest,
    NotFound,
    PurchaseAborted,
    Unavailable,
)
from inventory import TokenPool, acquire_track_nft
from models import Release, db
from settlement import artist_share, create_buyer_offer, pay_artist, platform_fee
from transaction_tracker import TransactionTracker


def album_price(release, track_count):
    # album_price is deliberately ignored: an album costs the sum of its tracks
    track_price = Decimal(str(release.song_price or 0))
    return track_price, track_price * track_count


def _abort(attempt, ledger, tracker, error, track=None):
    if isinstance(error, BrokerError) and track is not None and track.title in str(error):
        reason = str(error)
    elif track is not None:
        reason = f'Failed to process track: {track.title} - {error}'
    else:
        reason = str(error)

    current_app.logger.error(f'Album purchase {attempt.id} aborted: {reason}')
    refund_hash = compensate(attempt, ledger, tracker, reason,
                             failed_track_id=track.id if track is not None else None)
    return PurchaseAborted(
        reason,
        cause=error,
        track_title=track.title if track is not None else None,
        attempt_id=attempt.id,
        refund_tx_hash=refund_hash,
    )


def _pending_sale(attempt, release, track, record, offer_index, track_price, fee):
    return {
        'attemptId': attempt.id,
        'releaseId': release.id,
        'trackId': track.id,
        'trackTitle': track.title,
        'nftRecordId': record.id,
        'nftTokenId': record.nft_token_id,
        'editionNumber': record.edition_number,
        'offerIndex': offer_index,
        'buyerAddress': attempt.buyer_address,
        'artistAddress': release.artist_address,
        'price': float(track_price),
        'platformFee': float(fee),
    }


def purchase_album(release_id, buyer_address, ledger, tracker=None, fee_percent=None):
    """
    Broker an album purchase that the buyer has already paid for.

    Returns the offers the buyer must accept and the pending sales to confirm
    afterwards. Raises PurchaseAborted (always refunded) when any track fails
    after the attempt started, or a plain BrokerError for bad input.
    """
    if not release_id or not buyer_address:
        raise InvalidRequest('Missing required fields')
    if not is_valid_classic_address(buyer_address):
        raise InvalidRequest('Invalid wallet address')
    if not ledger.is_configured():
        raise ConfigurationError('Platform not configured')

    tracker = tracker or TransactionTracker()
    if fee_percent is None:
        fee_percent = current_app.config['PLATFORM_FEE_PERCENT']

    release = db.session.get(Release, release_id)
    if release is None:
        raise NotFound('Release not found')

    tracks = list(release.tracks)
    if not tracks:
        raise Unavailable('No tracks in release')

    regime = release.mint_regime
    track_price, total_price = album_price(release, len(tracks))
    attempt = tracker.start_attempt(release, buyer_address, track_price, total_price, regime)
    current_app.logger.info(
        f'Album purchase {attempt.id}: {release.title} ({len(tracks)} tracks, {regime.value}) '
        f'for {buyer_address}, total {total_price} XRP')

    if not release.is_purchasable:
        raise _abort(attempt, ledger, tracker, Unavailable('Release is not available for purchase'))

    pool = TokenPool(ledger)
    reserved = []
    for track in tracks:
        try:
            record = acquire_track_nft(track, release, regime, attempt, ledger, tracker, pool)
        except Exception as e:
            raise _abort(attempt, ledger, tracker, e, track=track) from e
        reserved.append((record, track))

    fee = platform_fee(track_price, fee_percent)
    offer_indexes = []
    pending_sales = []
    for record, track in reserved:
        try:
            offer_index = create_buyer_offer(ledger, record, track, buyer_address)
            tracker.record_step(attempt, 'offer', track_id=track.id,
                                nft_record_id=record.id, reference=offer_index)
        except Exception as e:
            raise _abort(attempt, ledger, tracker, e, track=track) from e
        offer_indexes.append(offer_index)
        pending_sales.append(_pending_sale(attempt, release, track, record, offer_index, track_price, fee))

    artist_tx = None
    if artist_share(total_price, fee_percent) > 0:
        artist_tx = pay_artist(ledger, release, total_price, fee_percent)
        tracker.record_step(attempt, 'artist_payment', reference=artist_tx,
                            status='done' if artist_tx else 'failed', commit=False)
    tracker.mark_listed(attempt, artist_tx)

    current_app.logger.info(f'Album purchase {attempt.id}: {len(offer_indexes)} NFTs ready for transfer')
    return {
        'success': True,
        'attemptId': attempt.id,
        'offerIndexes': offer_indexes,
        'pendingSales': pending_sales,
        'trackCount': len(offer_indexes),
        'message': f'{len(offer_indexes)} NFTs ready for transfer',
    }
