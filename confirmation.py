"""
Records sales once the buyer reports accepting the sell offers.

Each (pending sale, accept tx hash) pair is its own unit of work: a failing
row is reported and does not undo rows already recorded in the same batch.
"""

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from errors import BrokerError, ConfirmationMismatch, InvalidRequest, NotFound, Unavailable
from inventory import next_edition_number
from models import NFTRecord, NFTStatus, PurchaseAttempt, Release, Sale, Track, db
from notifications import send_sale_alert, send_sold_out_alert
from settlement import platform_fee
from transaction_tracker import TransactionTracker


def accepted_token_id(meta):
    """Token transferred by an NFTokenAcceptOffer, from its metadata."""
    if not meta:
        return None
    if meta.get('nftoken_id'):
        return meta['nftoken_id']
    for node in meta.get('AffectedNodes', []):
        deleted = node.get('DeletedNode')
        if deleted and deleted.get('LedgerEntryType') == 'NFTokenOffer':
            token_id = (deleted.get('FinalFields') or {}).get('NFTokenID')
            if token_id:
                return token_id
    return None


def verify_acceptance(ledger, tx_hash, nft_token_id, buyer_address):
    """Check on the ledger that ``tx_hash`` moved ``nft_token_id`` to ``buyer_address``."""
    tx = ledger.get_transaction(tx_hash)
    if tx is None:
        raise ConfirmationMismatch(f'Transaction not found on ledger: {tx_hash}')
    if not tx.get('validated'):
        raise ConfirmationMismatch(f'Transaction not validated yet: {tx_hash}')

    meta = tx.get('meta') or {}
    if meta.get('TransactionResult') != 'tesSUCCESS':
        raise ConfirmationMismatch(f"Transaction {tx_hash} failed: {meta.get('TransactionResult')}")

    # API v2 nests the transaction under tx_json, v1 returns it flat
    tx_json = tx.get('tx_json') or tx
    if tx_json.get('TransactionType') != 'NFTokenAcceptOffer':
        raise ConfirmationMismatch(f'Transaction {tx_hash} is not an offer acceptance')
    if tx_json.get('Account') != buyer_address:
        raise ConfirmationMismatch(f'Transaction {tx_hash} was not sent by the buyer')
    if accepted_token_id(meta) != nft_token_id:
        raise ConfirmationMismatch(f'Transaction {tx_hash} did not transfer NFT {nft_token_id}')


def _find_record(pending_sale):
    record = None
    if pending_sale.get('nftRecordId') is not None:
        record = db.session.get(NFTRecord, pending_sale['nftRecordId'])
    if record is None and pending_sale.get('nftTokenId'):
        record = NFTRecord.query.filter_by(nft_token_id=pending_sale['nftTokenId']) \
            .order_by(NFTRecord.id.desc()).first()
    if record is None:
        raise NotFound('NFT record not found for pending sale')
    if pending_sale.get('nftTokenId') and record.nft_token_id != pending_sale['nftTokenId']:
        raise ConfirmationMismatch('Pending sale does not match the reserved NFT')
    return record


def confirm_one(pending_sale, tx_hash, ledger, verify, fee_percent):
    """Record one sale. Returns the new Sale, or None if it was already recorded."""
    if not tx_hash:
        raise InvalidRequest('Missing accept transaction hash')

    record = _find_record(pending_sale)
    if record.status == NFTStatus.SOLD:
        current_app.logger.info(f'NFT {record.nft_token_id} already sold, skipping')
        return None
    if record.status != NFTStatus.PENDING:
        raise Unavailable(f'NFT {record.nft_token_id} is not reserved for sale')

    attempt = db.session.get(PurchaseAttempt, record.attempt_id) if record.attempt_id else None
    buyer_address = attempt.buyer_address if attempt else pending_sale.get('buyerAddress')
    if not buyer_address:
        raise InvalidRequest('Missing buyer address')
    if pending_sale.get('buyerAddress') and pending_sale['buyerAddress'] != buyer_address:
        raise ConfirmationMismatch('Pending sale buyer does not match the purchase')

    if Sale.query.filter_by(nft_token_id=record.nft_token_id, tx_hash=tx_hash).first() is not None:
        return None

    if verify:
        verify_acceptance(ledger, tx_hash, record.nft_token_id, buyer_address)

    release = db.session.get(Release, record.release_id)
    price = attempt.track_price if attempt else release.song_price
    edition = next_edition_number(record.track_id)

    updated = NFTRecord.query.filter_by(id=record.id, status=NFTStatus.PENDING).update(
        {'status': NFTStatus.SOLD, 'owner_address': buyer_address, 'edition_number': edition},
        synchronize_session=False,
    )
    if updated != 1:
        db.session.rollback()
        return None

    Track.query.filter_by(id=record.track_id).update(
        {'sold_count': Track.sold_count + 1}, synchronize_session=False)
    sale = Sale(
        release_id=record.release_id,
        track_id=record.track_id,
        buyer_address=buyer_address,
        seller_address=release.artist_address,
        nft_token_id=record.nft_token_id,
        edition_number=edition,
        price=price,
        platform_fee=platform_fee(price, fee_percent),
        tx_hash=tx_hash,
    )
    db.session.add(sale)
    db.session.commit()
    current_app.logger.info(f'Sale recorded: {sale.id} edition #{edition} of track {record.track_id}')
    return sale


def refresh_sold_editions(release):
    """An album edition is complete only when every track has sold it."""
    counts = [track.sold_count or 0 for track in release.tracks]
    release.sold_editions = min(counts) if counts else 0
    return release.sold_editions


def confirm_sales(pending_sales, accept_tx_hashes, ledger, verify=None, fee_percent=None, tracker=None):
    if not pending_sales or not accept_tx_hashes:
        raise InvalidRequest('Missing pending sales data')
    if not isinstance(pending_sales, list) or not isinstance(accept_tx_hashes, list):
        raise InvalidRequest('pendingSales and acceptTxHashes must be lists')
    if not all(isinstance(sale, dict) for sale in pending_sales):
        raise InvalidRequest('Each pending sale must be an object')
    if not all(tx_hash is None or isinstance(tx_hash, str) for tx_hash in accept_tx_hashes):
        raise InvalidRequest('Accept transaction hashes must be strings')
    if len(pending_sales) != len(accept_tx_hashes):
        raise InvalidRequest('pendingSales and acceptTxHashes must have the same length')

    if verify is None:
        verify = current_app.config['VERIFY_ACCEPT_TRANSACTIONS']
    if fee_percent is None:
        fee_percent = current_app.config['PLATFORM_FEE_PERCENT']
    tracker = tracker or TransactionTracker()

    confirmed, skipped, failures = [], [], []
    release_ids, attempt_ids = set(), set()

    for index, (pending_sale, tx_hash) in enumerate(zip(pending_sales, accept_tx_hashes)):
        try:
            sale = confirm_one(pending_sale, tx_hash, ledger, verify, fee_percent)
        except (BrokerError, SQLAlchemyError) as e:
            db.session.rollback()
            current_app.logger.error(f'Confirm sale #{index} failed: {e}')
            failures.append({'index': index, 'trackId': pending_sale.get('trackId'), 'error': str(e)})
            continue

        if pending_sale.get('attemptId'):
            attempt_ids.add(pending_sale['attemptId'])
        if sale is None:
            skipped.append(index)
            continue

        confirmed.append({'index': index, 'saleId': sale.id, 'editionNumber': sale.edition_number})
        release_ids.add(sale.release_id)
        send_sale_alert(sale, sale.release, sale.track)

    for release_id in release_ids:
        release = db.session.get(Release, release_id)
        was_sold_out = release.sold_editions >= release.total_editions
        refresh_sold_editions(release)
        db.session.commit()
        if not was_sold_out and release.sold_editions >= release.total_editions:
            send_sold_out_alert(release)

    for attempt_id in attempt_ids:
        tracker.complete_if_settled(attempt_id)

    return {
        'success': not failures,
        'confirmed': confirmed,
        'skipped': skipped,
        'failures': failures,
    }
