from flask import current_app

from errors import BrokerError, NotFound
from inventory import find_token_for_track, has_available_record, unbound_wallet_tokens
from models import MintRegime, Release, db


def _platform_inventory(ledger):
    """Unclaimed platform-wallet tokens, or None if the ledger could not be read."""
    try:
        return unbound_wallet_tokens(ledger)
    except BrokerError as e:
        current_app.logger.warning(f'Could not read platform inventory: {e}')
        return None


def _lazy_track_available(track, release):
    remaining = release.total_editions - (track.sold_count or 0)
    if remaining <= 0:
        return False
    return bool(track.metadata_cid) or has_available_record(track.id)


def _legacy_track_available(track, inventory):
    if has_available_record(track.id):
        return True
    if inventory is None:
        return False
    return find_token_for_track(track, inventory) is not None


def check_availability(release_id, ledger):
    """
    Read-only check of whether every track of a release can be bought right now.

    Legacy tracks that can only be confirmed on-chain count as unavailable
    when the ledger cannot be read.
    """
    release = db.session.get(Release, release_id)
    if release is None:
        raise NotFound('Release not found')

    regime = release.mint_regime
    tracks = list(release.tracks)
    base = {'releaseType': release.type, 'mintRegime': regime.value}

    if not release.is_purchasable:
        return dict(base, available=False, soldOut=False,
                    error='Release is not available for purchase')
    if not tracks:
        return dict(base, available=False, soldOut=False, error='No tracks in release')

    inventory = None
    if regime is MintRegime.LEGACY and ledger.is_configured():
        inventory = _platform_inventory(ledger)

    unavailable = []
    for track in tracks:
        if regime is MintRegime.LAZY:
            ok = _lazy_track_available(track, release)
        else:
            ok = _legacy_track_available(track, inventory)
        if not ok:
            unavailable.append(track.title)

    if len(unavailable) == len(tracks):
        return dict(base, available=False, soldOut=True, error='Album is sold out',
                    unavailableTracks=unavailable)
    if unavailable:
        return dict(base, available=False, soldOut=False,
                    error=f"Sold out: {', '.join(unavailable)}",
                    unavailableTracks=unavailable)

    return dict(base, available=True, trackCount=len(tracks))
