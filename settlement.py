"""Sell offers to the buyer and the artist's payout."""

from decimal import Decimal

from flask import current_app

from errors import BrokerError, LedgerTransactionFailed

NOMINAL_OFFER_DROPS = '1'  # buyer already paid the platform


def extract_offer_index(meta):
    for node in (meta or {}).get('AffectedNodes', []):
        created = node.get('CreatedNode')
        if created and created.get('LedgerEntryType') == 'NFTokenOffer':
            return created.get('LedgerIndex')
    return (meta or {}).get('offer_id')


def cancel_platform_offers(ledger, nft_token_id):
    """Cancel sell offers the platform already has out for this token. Best effort."""
    try:
        offers = ledger.get_sell_offers(nft_token_id)
        stale = [o['nft_offer_index'] for o in offers if o.get('owner') == ledger.platform_address]
        if stale:
            ledger.cancel_offers(stale)
            current_app.logger.info(f'Cancelled {len(stale)} stale offer(s) for {nft_token_id}')
        return len(stale)
    except BrokerError as e:
        current_app.logger.warning(f'Could not cancel existing offers for {nft_token_id}: {e}')
        return 0


def create_buyer_offer(ledger, record, track, buyer_address):
    """List ``record``'s token for ``buyer_address`` only. Returns the offer index."""
    cancel_platform_offers(ledger, record.nft_token_id)

    try:
        result = ledger.create_sell_offer(record.nft_token_id, buyer_address, NOMINAL_OFFER_DROPS)
    except LedgerTransactionFailed as e:
        e.track_title = track.title
        raise

    offer_index = extract_offer_index(result.get('meta'))
    if not offer_index:
        raise LedgerTransactionFailed(f'Offer created but index not found for: {track.title}',
                                      track_title=track.title)
    return offer_index


def artist_share(total_price, fee_percent):
    fee = Decimal(str(total_price)) * Decimal(str(fee_percent)) / Decimal(100)
    return Decimal(str(total_price)) - fee


def platform_fee(price, fee_percent):
    return Decimal(str(price)) * Decimal(str(fee_percent)) / Decimal(100)


def pay_artist(ledger, release, total_price, fee_percent):
    """
    Send the artist their share of an album sale.

    Returns the payment hash, or None when the payment failed. A failure here
    never undoes the sell offers already issued; it is logged for manual payout.
    """
    amount = artist_share(total_price, fee_percent)
    if amount <= 0:
        return None

    try:
        tx_hash = ledger.send_payment(release.artist_address, amount, f'Album Sale: {release.title}')
    except BrokerError as e:
        current_app.logger.error(
            f'Artist payment failed for release {release.id} ({amount} XRP to {release.artist_address}): {e}')
        return None

    current_app.logger.info(f'Artist paid {amount} XRP: {tx_hash}')
    return tx_hash
