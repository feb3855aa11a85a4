import pytest

from availability import check_availability
from errors import NotFound
from models import NFTStatus, Track, db


def sell_out(track, editions):
    Track.query.filter_by(id=track.id).update({'sold_count': editions})
    db.session.commit()


def test_lazy_release_with_metadata_is_available(app, ledger, make_release):
    release = make_release(tracks=3)
    result = check_availability(release.id, ledger)
    assert result == {'releaseType': 'album', 'mintRegime': 'lazy', 'available': True, 'trackCount': 3}


def test_names_the_sold_out_track(app, ledger, make_release):
    release = make_release(tracks=3, total_editions=2)
    sell_out(release.tracks[2], 2)

    result = check_availability(release.id, ledger)

    assert result['available'] is False
    assert result['soldOut'] is False
    assert result['error'] == 'Sold out: Track C'
    assert result['unavailableTracks'] == ['Track C']


def test_every_track_sold_out(app, ledger, make_release):
    release = make_release(tracks=2, total_editions=1)
    for track in release.tracks:
        sell_out(track, 1)

    result = check_availability(release.id, ledger)

    assert result['available'] is False
    assert result['soldOut'] is True
    assert result['error'] == 'Album is sold out'


def test_lazy_track_without_metadata_is_unavailable(app, ledger, make_release):
    release = make_release(tracks=1, with_metadata=False)
    result = check_availability(release.id, ledger)
    assert result['error'] == 'Album is sold out'


def test_legacy_tracks_found_in_wallet_or_records(app, ledger, make_release, add_record):
    release = make_release(tracks=2, lazy=False, is_minted=True)
    add_record(release.tracks[0], 'A' * 64)
    ledger.add_wallet_nft(release.tracks[1].metadata_cid)

    result = check_availability(release.id, ledger)

    assert result['available'] is True
    assert result['mintRegime'] == 'legacy'


def test_legacy_ignores_wallet_tokens_already_reserved(app, ledger, make_release, add_record):
    release = make_release(tracks=1, lazy=False, is_minted=True)
    token = ledger.add_wallet_nft(release.tracks[0].metadata_cid)
    add_record(release.tracks[0], token, status=NFTStatus.PENDING)

    result = check_availability(release.id, ledger)

    assert result['available'] is False
    assert result['soldOut'] is True


def test_legacy_inventory_read_failure_counts_as_unavailable(app, ledger, make_release, add_record):
    release = make_release(tracks=2, lazy=False, is_minted=True)
    add_record(release.tracks[0], 'A' * 64)
    ledger.add_wallet_nft(release.tracks[1].metadata_cid)
    ledger.fail_inventory_read = True

    result = check_availability(release.id, ledger)

    assert result['available'] is False
    assert result['error'] == 'Sold out: Track B'


def test_unlisted_release(app, ledger, make_release):
    release = make_release(lazy=False, status='draft')
    result = check_availability(release.id, ledger)
    assert result['available'] is False
    assert result['error'] == 'Release is not available for purchase'


def test_release_without_tracks(app, ledger, make_release):
    release = make_release(tracks=0)
    result = check_availability(release.id, ledger)
    assert result['error'] == 'No tracks in release'


def test_unknown_release(app, ledger):
    with pytest.raises(NotFound):
        check_availability('missing', ledger)


def test_does_not_write(app, ledger, make_release):
    release = make_release(tracks=2)
    check_availability(release.id, ledger)
    assert ledger.minted == []
    assert ledger.created_offers == []
    assert db.session.get(Track, release.tracks[0].id).sold_count == 0
