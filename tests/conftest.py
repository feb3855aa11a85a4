"""
Global test configuration and fixtures.
"""

from decimal import Decimal
from itertools import count

import pytest

from app import create_app
from errors import LedgerTransactionFailed
from ledger import uri_to_hex
from models import NFTRecord, Release, Sale, Track, db

PLATFORM = 'rPLATFORMxxxxxxxxxxxxxxxxxxxxxxxxx'
ARTIST = 'rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn'
BUYER = 'rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh'
RESELLER = 'rsA2LpzuawewSBQXkiju3YQTMzW13pAAdW'


class FakeLedger:
    """In-memory stand-in for XRPLLedgerClient with the same method surface."""

    def __init__(self, platform_address=PLATFORM):
        self.platform_address = platform_address
        self.nfts = []
        self.offers = {}
        self.transactions = {}
        self.payments = []
        self.minted = []
        self.created_offers = []
        self.cancelled = []
        self.fail_offer_for = set()
        self.fail_payment_to = set()
        self.fail_mint = False
        self.fail_inventory_read = False
        self.mint_meta = None
        self._ids = count(1)

    def _hex(self, prefix):
        return f'{prefix}{next(self._ids):060X}'

    def is_configured(self):
        return True

    def get_status(self):
        return {'configured': True, 'connected': True, 'platform_address': self.platform_address}

    def add_wallet_nft(self, metadata_cid):
        token_id = self._hex('0008')
        self.nfts.append({'NFTokenID': token_id, 'URI': uri_to_hex(f'ipfs://{metadata_cid}')})
        return token_id

    def get_account_nfts(self, account=None):
        if self.fail_inventory_read:
            raise LedgerTransactionFailed('account_nfts request failed: timeout')
        return list(self.nfts)

    def get_sell_offers(self, nft_id):
        return list(self.offers.get(nft_id, []))

    def cancel_offers(self, offer_ids):
        self.cancelled.extend(offer_ids)
        for nft_id, offers in self.offers.items():
            self.offers[nft_id] = [o for o in offers if o['nft_offer_index'] not in offer_ids]
        return {'hash': self._hex('CA11'), 'meta': {'TransactionResult': 'tesSUCCESS'}}

    def create_sell_offer(self, nft_id, destination, amount_drops='1'):
        if nft_id in self.fail_offer_for:
            raise LedgerTransactionFailed('NFTokenCreateOffer failed: tecNO_PERMISSION',
                                          result_code='tecNO_PERMISSION')
        index = self._hex('0FFE')
        self.created_offers.append({'nft_id': nft_id, 'destination': destination,
                                    'amount': amount_drops, 'index': index})
        self.offers.setdefault(nft_id, []).append({'nft_offer_index': index, 'owner': self.platform_address})
        return {
            'hash': self._hex('AAAA'),
            'meta': {
                'TransactionResult': 'tesSUCCESS',
                'AffectedNodes': [
                    {'ModifiedNode': {'LedgerEntryType': 'AccountRoot'}},
                    {'CreatedNode': {'LedgerEntryType': 'NFTokenOffer', 'LedgerIndex': index}},
                ],
            },
        }

    def mint_nft(self, uri, transfer_fee):
        if self.fail_mint:
            raise LedgerTransactionFailed('NFTokenMint failed: tecINSUFFICIENT_RESERVE',
                                          result_code='tecINSUFFICIENT_RESERVE')
        token_id = self._hex('0008')
        self.minted.append({'uri': uri, 'transfer_fee': transfer_fee, 'token_id': token_id})
        previous = [{'NFToken': {'NFTokenID': n['NFTokenID']}} for n in self.nfts]
        self.nfts.append({'NFTokenID': token_id, 'URI': uri_to_hex(uri)})
        meta = self.mint_meta if self.mint_meta is not None else {
            'TransactionResult': 'tesSUCCESS',
            'AffectedNodes': [{
                'ModifiedNode': {
                    'LedgerEntryType': 'NFTokenPage',
                    'PreviousFields': {'NFTokens': previous},
                    'FinalFields': {'NFTokens': previous + [{'NFToken': {'NFTokenID': token_id}}]},
                },
            }],
        }
        return {'hash': self._hex('B1B1'), 'meta': meta}

    def send_payment(self, destination, amount_xrp, memo_text):
        if destination in self.fail_payment_to:
            raise LedgerTransactionFailed('Payment failed: tecUNFUNDED_PAYMENT', result_code='tecUNFUNDED_PAYMENT')
        tx_hash = self._hex('9A9A')
        self.payments.append({'destination': destination, 'amount': Decimal(str(amount_xrp)),
                              'memo': memo_text, 'hash': tx_hash})
        return tx_hash

    def get_transaction(self, tx_hash):
        return self.transactions.get(tx_hash)

    def accept_offer(self, buyer, nft_id, validated=True, result='tesSUCCESS'):
        """Simulate the buyer accepting the platform's offer; returns the tx hash."""
        tx_hash = self._hex('ACCE')
        self.transactions[tx_hash] = {
            'hash': tx_hash,
            'validated': validated,
            'tx_json': {'TransactionType': 'NFTokenAcceptOffer', 'Account': buyer},
            'meta': {'TransactionResult': result, 'nftoken_id': nft_id},
        }
        self.nfts = [n for n in self.nfts if n['NFTokenID'] != nft_id]
        return tx_hash

    def payments_to(self, address):
        return [p for p in self.payments if p['destination'] == address]


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def app(ledger):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'PLATFORM_WALLET_ADDRESS': PLATFORM,
        'PLATFORM_FEE_PERCENT': 2,
        'VERIFY_ACCEPT_TRANSACTIONS': True,
        'DISCORD_WEBHOOK_URL': '',
    }, ledger=ledger)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_release(app):
    """Factory for a release with ``tracks`` tracks, lazy by default."""

    def _make(tracks=3, price='5', total_editions=10, lazy=True, is_minted=False,
              status='live', royalty_percent=None, with_metadata=True, artist=ARTIST, title='Night Drive'):
        release = Release(
            title=title,
            artist_name='The Artist',
            artist_address=artist,
            type='album' if tracks > 1 else 'single',
            song_price=Decimal(price),
            total_editions=total_editions,
            royalty_percent=royalty_percent,
            mint_fee_paid=lazy,
            is_minted=is_minted,
            status=status,
        )
        db.session.add(release)
        db.session.flush()
        for n in range(tracks):
            db.session.add(Track(
                release_id=release.id,
                title=f'Track {chr(ord("A") + n)}',
                track_number=n + 1,
                metadata_cid=f'bafy{release.id[:8]}{n}' if with_metadata else None,
            ))
        db.session.commit()
        return release

    return _make


@pytest.fixture
def add_record(app):
    def _add(track, token_id, status='available', edition_number=None):
        record = NFTRecord(nft_token_id=token_id, release_id=track.release_id, track_id=track.id,
                           status=status, edition_number=edition_number, owner_address=PLATFORM)
        db.session.add(record)
        db.session.commit()
        return record

    return _add


@pytest.fixture
def add_sale(app):
    def _add(release, track, seller, price='5', buyer=BUYER, tx_hash=None, token_id=None):
        sale = Sale(release_id=release.id, track_id=track.id if track else None, buyer_address=buyer,
                    seller_address=seller, price=Decimal(price), platform_fee=Decimal('0'),
                    tx_hash=tx_hash, nft_token_id=token_id)
        db.session.add(sale)
        db.session.commit()
        return sale

    return _add
