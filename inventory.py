"""
Per-track inventory acquisition.

For each track of an album purchase, one token is reserved for the buyer:

1. reuse an ``available`` NFTRecord (lowest edition first), claimed with a
   compare-and-swap so two concurrent purchases can never both hold it;
2. legacy releases: discover a pre-minted token in the platform wallet whose
   URI points at the track's metadata and bind it in ``pending`` state; the
   unique token id on ``nfts`` makes a second binding of the same token fail;
3. lazy releases: mint a fresh token (see minter.py).
"""

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from errors import Unavailable
from ledger import uri_to_hex
from minter import mint_for_track
from models import MintRegime, NFTRecord, NFTStatus, Sale, db


def next_edition_number(track_id):
    """Sale-order edition: one past the number of recorded sales for the track."""
    return Sale.query.filter_by(track_id=track_id).count() + 1


def bound_token_ids(token_ids):
    """The subset of ``token_ids`` that already has an NFTRecord."""
    token_ids = [t for t in token_ids if t]
    if not token_ids:
        return set()
    rows = db.session.query(NFTRecord.nft_token_id).filter(
        NFTRecord.nft_token_id.in_(token_ids),
    ).all()
    return {row[0] for row in rows}


def unbound_wallet_tokens(ledger):
    """Platform wallet tokens not yet bound to any record; those with a record go through reuse."""
    wallet = ledger.get_account_nfts()
    bound = bound_token_ids([nft.get('NFTokenID') for nft in wallet])
    return [nft for nft in wallet if nft.get('NFTokenID') not in bound]


def has_available_record(track_id):
    return NFTRecord.query.filter(
        NFTRecord.track_id == track_id,
        NFTRecord.status == NFTStatus.AVAILABLE,
        NFTRecord.nft_token_id.isnot(None),
    ).first() is not None


def find_token_for_track(track, pool):
    """Return the first token in ``pool`` whose URI decodes to the track's metadata pointer."""
    if not track.metadata_uri:
        return None
    expected = uri_to_hex(track.metadata_uri)
    for nft in pool:
        if (nft.get('URI') or '').upper() == expected:
            return nft
    return None


class TokenPool:
    """Platform wallet tokens fetched once per purchase; claimed tokens are removed."""

    def __init__(self, ledger):
        self.ledger = ledger
        self._tokens = None

    def load(self):
        if self._tokens is None:
            self._tokens = unbound_wallet_tokens(self.ledger)
        return self._tokens

    def take(self, track):
        tokens = self.load()
        nft = find_token_for_track(track, tokens)
        if nft is not None:
            tokens.remove(nft)
        return nft


def reserve_existing(track, attempt):
    """Compare-and-swap the lowest-edition available record for this track into pending."""
    candidates = NFTRecord.query.filter(
        NFTRecord.track_id == track.id,
        NFTRecord.status == NFTStatus.AVAILABLE,
        NFTRecord.nft_token_id.isnot(None),
    ).order_by(NFTRecord.edition_number.is_(None), NFTRecord.edition_number, NFTRecord.id).all()

    edition = next_edition_number(track.id)
    for candidate in candidates:
        taken = NFTRecord.query.filter_by(id=candidate.id, status=NFTStatus.AVAILABLE).update(
            {
                'status': NFTStatus.PENDING,
                'attempt_id': attempt.id,
                'edition_number': edition,
            },
            synchronize_session=False,
        )
        if taken == 1:
            db.session.commit()
            db.session.refresh(candidate)
            return candidate
        current_app.logger.info(f'NFT record {candidate.id} already taken, trying next candidate')
    return None


def discover_legacy_token(track, release, attempt, pool):
    """
    Bind the next matching wallet token to a pending record.

    A token bound by a concurrent purchase since the pool was loaded fails the
    unique insert; it is skipped like an already-taken reservation.
    """
    while True:
        nft = pool.take(track)
        if nft is None:
            return None

        record = NFTRecord(
            nft_token_id=nft['NFTokenID'],
            release_id=release.id,
            track_id=track.id,
            edition_number=next_edition_number(track.id),
            owner_address=pool.ledger.platform_address,
            status=NFTStatus.PENDING,
            attempt_id=attempt.id,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            current_app.logger.info(f"Legacy NFT {nft['NFTokenID']} already taken, trying next token")
            continue

        current_app.logger.info(f"Discovered legacy NFT {record.nft_token_id} for track: {track.title}")
        return record


def lazy_editions_left(track, release):
    """Read-side estimate; mint_for_track re-checks atomically before minting."""
    pending = NFTRecord.query.filter_by(track_id=track.id, status=NFTStatus.PENDING).count()
    return release.total_editions - (track.sold_count or 0) - pending


def acquire_track_nft(track, release, regime, attempt, ledger, tracker, pool):
    """
    Reserve one token for ``track`` on behalf of ``attempt``.

    Returns the pending NFTRecord; raises Unavailable when the track cannot be
    sold, or a ledger error when minting fails.
    """
    record = reserve_existing(track, attempt)
    if record is not None:
        tracker.record_step(attempt, 'reserve', track_id=track.id,
                            nft_record_id=record.id, reference=record.nft_token_id)
        return record

    if regime is MintRegime.LEGACY:
        if not track.metadata_cid:
            raise Unavailable(f'Track missing metadata: {track.title}', track_title=track.title)
        record = discover_legacy_token(track, release, attempt, pool)
        if record is None:
            raise Unavailable(f'NFT not available for track: {track.title}', track_title=track.title)
        tracker.record_step(attempt, 'discover', track_id=track.id,
                            nft_record_id=record.id, reference=record.nft_token_id)
        return record

    if not track.metadata_cid:
        raise Unavailable(f'Track missing metadata: {track.title}', track_title=track.title)
    if lazy_editions_left(track, release) <= 0:
        raise Unavailable(f'Sold out: {track.title}', track_title=track.title)

    record = mint_for_track(track, release, attempt, ledger, edition_number=next_edition_number(track.id))
    tracker.record_step(attempt, 'mint', track_id=track.id,
                        nft_record_id=record.id, reference=record.nft_token_id)
    return record


def sold_token_counts(track_ids):
    """Number of sales per track id, for counter repair and diagnostics."""
    rows = db.session.query(Sale.track_id, func.count(Sale.id)).filter(
        Sale.track_id.in_(track_ids)
    ).group_by(Sale.track_id).all()
    return {track_id: count for track_id, count in rows}
