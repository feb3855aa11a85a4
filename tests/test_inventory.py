"""
Reservation races: compare-and-swap reuse, unique legacy binding, lazy mint cap.
"""

from decimal import Decimal

import pytest

import inventory
from broker import purchase_album
from errors import PurchaseAborted
from inventory import bound_token_ids, reserve_existing
from models import NFTRecord, NFTStatus, Track, db
from transaction_tracker import TransactionTracker

from conftest import BUYER, RESELLER


def start_attempt(release, buyer=BUYER):
    return TransactionTracker().start_attempt(release, buyer, Decimal('5'), Decimal('5'), release.mint_regime)


class TestReserveExisting:
    def test_skips_a_record_taken_after_selection(self, app, make_release, add_record, monkeypatch):
        release = make_release(tracks=1)
        track = release.tracks[0]
        first_id = add_record(track, 'A' * 64, edition_number=1).id
        second_id = add_record(track, 'B' * 64, edition_number=2).id
        original = inventory.next_edition_number

        def taken_by_another_purchase(track_id):
            NFTRecord.query.filter_by(id=first_id).update(
                {'status': NFTStatus.PENDING}, synchronize_session=False)
            db.session.commit()
            return original(track_id)

        monkeypatch.setattr(inventory, 'next_edition_number', taken_by_another_purchase)
        attempt = start_attempt(release)

        record = reserve_existing(track, attempt)

        assert record.id == second_id
        assert record.status == NFTStatus.PENDING
        assert record.attempt_id == attempt.id
        taken = db.session.get(NFTRecord, first_id)
        assert taken.status == NFTStatus.PENDING
        assert taken.attempt_id is None
        assert taken.edition_number == 1

    def test_returns_none_when_every_candidate_is_taken(self, app, make_release, add_record, monkeypatch):
        release = make_release(tracks=1)
        track = release.tracks[0]
        record_id = add_record(track, 'A' * 64).id
        original = inventory.next_edition_number

        def taken_by_another_purchase(track_id):
            NFTRecord.query.filter_by(id=record_id).update(
                {'status': NFTStatus.PENDING}, synchronize_session=False)
            db.session.commit()
            return original(track_id)

        monkeypatch.setattr(inventory, 'next_edition_number', taken_by_another_purchase)

        assert reserve_existing(track, start_attempt(release)) is None


class TestConcurrentLegacyDiscovery:
    def rival_runs_during_wallet_read(self, monkeypatch, release_id, ledger):
        """Run a second purchase after the first has read bound tokens but before it binds one."""
        original = inventory.bound_token_ids
        rival = {}

        def stale_read(token_ids):
            bound = original(token_ids)
            if not rival:
                rival['running'] = True
                try:
                    rival['result'] = purchase_album(release_id, RESELLER, ledger)
                except PurchaseAborted as e:
                    rival['error'] = e
            return bound

        monkeypatch.setattr(inventory, 'bound_token_ids', stale_read)
        return rival

    def test_second_purchase_binds_the_next_token(self, app, ledger, make_release, monkeypatch):
        release = make_release(tracks=1, lazy=False, is_minted=True)
        cid = release.tracks[0].metadata_cid
        first_token = ledger.add_wallet_nft(cid)
        second_token = ledger.add_wallet_nft(cid)
        rival = self.rival_runs_during_wallet_read(monkeypatch, release.id, ledger)

        result = purchase_album(release.id, BUYER, ledger)

        assert rival['result']['pendingSales'][0]['nftTokenId'] == first_token
        assert result['pendingSales'][0]['nftTokenId'] == second_token
        for token in (first_token, second_token):
            assert NFTRecord.query.filter_by(nft_token_id=token).count() == 1
        # the rival's offer was never cancelled by the second listing
        assert ledger.cancelled == []

    def test_no_token_left_aborts_and_refunds(self, app, ledger, make_release, monkeypatch):
        release = make_release(tracks=1, lazy=False, is_minted=True)
        token = ledger.add_wallet_nft(release.tracks[0].metadata_cid)
        rival = self.rival_runs_during_wallet_read(monkeypatch, release.id, ledger)

        with pytest.raises(PurchaseAborted) as exc:
            purchase_album(release.id, BUYER, ledger)

        assert 'NFT not available for track: Track A' in str(exc.value)
        assert rival['result']['pendingSales'][0]['nftTokenId'] == token
        record = NFTRecord.query.filter_by(nft_token_id=token).one()
        assert record.status == NFTStatus.PENDING
        assert record.attempt_id == rival['result']['attemptId']
        assert ledger.cancelled == []
        assert ledger.payments_to(BUYER)[0]['amount'] == Decimal('5')


class TestLazyMintCap:
    def test_mint_slot_claimed_elsewhere_means_sold_out(self, app, ledger, make_release):
        release = make_release(tracks=1, total_editions=1)
        # another purchase claimed the only slot and has not stored its record yet
        Track.query.filter_by(id=release.tracks[0].id).update({'minted_count': 1})
        db.session.commit()

        with pytest.raises(PurchaseAborted) as exc:
            purchase_album(release.id, BUYER, ledger)

        assert 'Sold out: Track A' in str(exc.value)
        assert ledger.minted == []

    def test_failed_mint_gives_the_slot_back(self, app, ledger, make_release):
        release = make_release(tracks=1, total_editions=1)
        track_id = release.tracks[0].id
        ledger.fail_mint = True

        with pytest.raises(PurchaseAborted):
            purchase_album(release.id, BUYER, ledger)
        assert db.session.get(Track, track_id).minted_count == 0

        ledger.fail_mint = False
        result = purchase_album(release.id, BUYER, ledger)
        assert result['trackCount'] == 1
        assert db.session.get(Track, track_id).minted_count == 1

    def test_never_mints_past_edition_size(self, app, ledger, make_release):
        release = make_release(tracks=1, total_editions=2)
        purchase_album(release.id, BUYER, ledger)
        purchase_album(release.id, RESELLER, ledger)

        with pytest.raises(PurchaseAborted):
            purchase_album(release.id, BUYER, ledger)
        assert len(ledger.minted) == 2


def test_bound_token_ids_checks_only_the_given_tokens(app, make_release, add_record):
    track = make_release(tracks=1).tracks[0]
    add_record(track, 'A' * 64, status=NFTStatus.SOLD)
    add_record(track, 'B' * 64)
    add_record(track, 'C' * 64, status=NFTStatus.PENDING)

    assert bound_token_ids(['A' * 64, 'B' * 64, 'D' * 64]) == {'A' * 64, 'B' * 64}
    assert bound_token_ids([None]) == set()
