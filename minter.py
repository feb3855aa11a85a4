"""On-demand minting for lazy releases."""

from flask import current_app

from errors import LedgerTransactionFailed, TokenExtractionFailed, Unavailable
from models import NFTRecord, NFTStatus, Release, Track, db

TRANSFER_FEE_PER_PERCENT = 1000


def transfer_fee_for(release):
    """Resale royalty in ledger TransferFee units (5% -> 5000)."""
    return int(round(release.effective_royalty_percent * TRANSFER_FEE_PER_PERCENT))


def _token_id(entry):
    return (entry or {}).get('NFToken', {}).get('NFTokenID')


def extract_nftoken_id(meta):
    """
    Find the NFTokenID created by a mint from its transaction metadata.

    A mint either creates a new NFTokenPage (the new token is the last entry)
    or modifies an existing page (the new token is the id in FinalFields that
    PreviousFields did not have).
    """
    if not meta:
        return None

    for node in meta.get('AffectedNodes', []):
        created = node.get('CreatedNode')
        if created and created.get('LedgerEntryType') == 'NFTokenPage':
            tokens = (created.get('NewFields') or {}).get('NFTokens') or []
            if tokens and _token_id(tokens[-1]):
                return _token_id(tokens[-1])

        modified = node.get('ModifiedNode')
        if modified and modified.get('LedgerEntryType') == 'NFTokenPage':
            previous = (modified.get('PreviousFields') or {}).get('NFTokens') or []
            final = (modified.get('FinalFields') or {}).get('NFTokens') or []
            previous_ids = {_token_id(t) for t in previous}
            for token in final:
                token_id = _token_id(token)
                if token_id and token_id not in previous_ids:
                    return token_id

    return meta.get('nftoken_id')


def claim_mint_slot(track, release):
    """
    Atomically count one more minted token for ``track``, capped at the edition size.

    Concurrent purchases race on this single UPDATE, so at most
    ``total_editions`` tokens are ever minted for a track.
    """
    claimed = Track.query.filter(
        Track.id == track.id,
        Track.minted_count < release.total_editions,
    ).update({'minted_count': Track.minted_count + 1}, synchronize_session=False)
    db.session.commit()
    return claimed == 1


def release_mint_slot(track):
    Track.query.filter(Track.id == track.id, Track.minted_count > 0).update(
        {'minted_count': Track.minted_count - 1}, synchronize_session=False)
    db.session.commit()


def mint_for_track(track, release, attempt, ledger, edition_number):
    """Mint a transferable token for ``track`` and bind it to a pending NFTRecord."""
    if not track.metadata_uri:
        raise LedgerTransactionFailed(f'Cannot mint without metadata: {track.title}', track_title=track.title)
    if not claim_mint_slot(track, release):
        raise Unavailable(f'Sold out: {track.title}', track_title=track.title)

    transfer_fee = transfer_fee_for(release)
    current_app.logger.info(f'Lazy minting NFT for track: {track.title} (transfer fee {transfer_fee})')

    try:
        result = ledger.mint_nft(track.metadata_uri, transfer_fee)
    except LedgerTransactionFailed as e:
        release_mint_slot(track)
        e.track_title = track.title
        raise

    nft_token_id = extract_nftoken_id(result.get('meta'))
    if not nft_token_id:
        current_app.logger.error(f"Could not extract NFT Token ID from mint {result.get('hash')}")
        release_mint_slot(track)
        raise TokenExtractionFailed(
            f'Could not extract NFT Token ID from mint result for track: {track.title}',
            track_title=track.title,
        )

    record = NFTRecord(
        nft_token_id=nft_token_id,
        release_id=release.id,
        track_id=track.id,
        edition_number=edition_number,
        owner_address=ledger.platform_address,
        status=NFTStatus.PENDING,
        attempt_id=attempt.id,
    )
    db.session.add(record)
    Release.query.filter_by(id=release.id).update(
        {'minted_editions': Release.minted_editions + 1}, synchronize_session=False)
    db.session.commit()
    db.session.refresh(track)
    db.session.refresh(release)

    current_app.logger.info(f'NFT minted: {nft_token_id} (edition {edition_number})')
    return record
