"""Operator jobs: recover crashed purchases, repair counters, compare chain vs database."""

from flask import current_app

from compensator import compensate
from confirmation import refresh_sold_editions
from inventory import sold_token_counts
from ledger import uri_to_hex
from models import MintRegime, NFTRecord, NFTStatus, Release, Track, db


def reconcile_stale_attempts(ledger, tracker, max_age_minutes):
    """
    Compensate purchases that never left ``in_progress``.

    A purchase that crashed mid-batch still holds pending records and still
    owes the buyer their payment; this releases the records and refunds.
    """
    results = []
    for attempt in tracker.stale_attempts(max_age_minutes):
        reason = 'Purchase interrupted before completion'
        current_app.logger.warning(f'Reconciling stale purchase attempt {attempt.id}')
        refund_hash = compensate(attempt, ledger, tracker, reason)
        results.append({
            'attemptId': attempt.id,
            'buyerAddress': attempt.buyer_address,
            'refunded': refund_hash is not None,
            'refundTxHash': refund_hash,
        })
    return results


def repair_sales_counters(release_id=None):
    """Reset track sold counts from recorded sales and release sold editions from tracks."""
    query = Release.query
    if release_id:
        query = query.filter_by(id=release_id)

    fixes = []
    for release in query.all():
        counts = sold_token_counts([t.id for t in release.tracks])
        for track in release.tracks:
            actual = counts.get(track.id, 0)
            if (track.sold_count or 0) != actual:
                current_app.logger.info(f'Fixing track "{track.title}": {track.sold_count} -> {actual}')
                fixes.append({'type': 'track', 'id': track.id, 'title': track.title,
                              'was': track.sold_count, 'now': actual})
                track.sold_count = actual

        was = release.sold_editions
        now = refresh_sold_editions(release)
        if was != now:
            fixes.append({'type': 'release', 'id': release.id, 'title': release.title,
                          'was': was, 'now': now})

    db.session.commit()
    return fixes


def diagnose_inventory(ledger):
    """Per track: tokens still in the platform wallet vs sales recorded in the database."""
    wallet_nfts = ledger.get_account_nfts()
    by_uri = {}
    for nft in wallet_nfts:
        by_uri.setdefault((nft.get('URI') or '').upper(), []).append(nft.get('NFTokenID'))

    tracks = Track.query.filter(Track.metadata_cid.isnot(None)).all()
    sales = sold_token_counts([t.id for t in tracks])

    results = []
    for track in tracks:
        release = track.release
        in_wallet = len(by_uri.get(uri_to_hex(track.metadata_uri), []))
        db_sales = sales.get(track.id, 0)
        sold_nfts = NFTRecord.query.filter_by(track_id=track.id, status=NFTStatus.SOLD).count()
        entry = {
            'track': f'{release.title} - {track.title}',
            'releaseId': release.id,
            'trackId': track.id,
            'mintRegime': release.mint_regime.value,
            'inPlatformWallet': in_wallet,
            'dbSalesCount': db_sales,
            'dbSoldNfts': sold_nfts,
            'trackSoldCount': track.sold_count,
        }
        if release.mint_regime is MintRegime.LEGACY:
            # legacy releases were fully pre-minted, so whatever left the wallet was sold
            sold_on_chain = release.total_editions - in_wallet
            entry['soldOnChain'] = sold_on_chain
            entry['missingSales'] = sold_on_chain - db_sales
            entry['hasDiscrepancy'] = sold_on_chain != db_sales
        else:
            entry['hasDiscrepancy'] = (track.sold_count or 0) != db_sales
        results.append(entry)

    discrepancies = [r for r in results if r['hasDiscrepancy']]
    return {
        'platformWallet': ledger.platform_address,
        'totalNFTsInWallet': len(wallet_nfts),
        'tracksChecked': len(results),
        'tracksWithDiscrepancies': len(discrepancies),
        'totalMissingSales': sum(max(0, r.get('missingSales', 0)) for r in results),
        'discrepancies': discrepancies,
        'allTracks': results,
    }
