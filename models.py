import enum
import uuid
from datetime import datetime
from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

DEFAULT_ROYALTY_PERCENT = Decimal('5')


def new_id():
    return str(uuid.uuid4())


class MintRegime(str, enum.Enum):
    """How a release's tokens come to exist. Decided once per release."""

    LAZY = 'lazy'       # minted by the platform wallet at purchase time
    LEGACY = 'legacy'   # pre-minted by the artist before lazy minting existed

    @classmethod
    def for_release(cls, release):
        return cls.LAZY if release.mint_fee_paid else cls.LEGACY


class NFTStatus:
    AVAILABLE = 'available'
    PENDING = 'pending'
    SOLD = 'sold'


class Release(db.Model):
    __tablename__ = 'releases'

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    artist_name = db.Column(db.String(255))
    artist_address = db.Column(db.String(64), nullable=False, index=True)
    type = db.Column(db.String(20), default='album')  # single, album
    song_price = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    album_price = db.Column(db.Numeric(18, 6))
    total_editions = db.Column(db.Integer, nullable=False, default=1)
    sold_editions = db.Column(db.Integer, nullable=False, default=0)
    minted_editions = db.Column(db.Integer, nullable=False, default=0)
    royalty_percent = db.Column(db.Numeric(5, 2))
    mint_fee_paid = db.Column(db.Boolean, nullable=False, default=False)
    is_minted = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(20), default='draft')  # draft, live
    sell_offer_index = db.Column(db.String(64))
    cover_url = db.Column(db.String(512))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tracks = db.relationship('Track', backref='release', lazy=True,
                             order_by='Track.track_number')

    @property
    def mint_regime(self):
        return MintRegime.for_release(self)

    @property
    def is_purchasable(self):
        return bool(self.mint_fee_paid or self.status == 'live'
                    or self.is_minted or self.sell_offer_index)

    @property
    def effective_royalty_percent(self):
        if self.royalty_percent is None:
            return DEFAULT_ROYALTY_PERCENT
        return Decimal(str(self.royalty_percent))


class Track(db.Model):
    __tablename__ = 'tracks'

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    release_id = db.Column(db.String(64), db.ForeignKey('releases.id'), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    track_number = db.Column(db.Integer, default=1)
    metadata_cid = db.Column(db.String(128))
    sold_count = db.Column(db.Integer, nullable=False, default=0)
    minted_count = db.Column(db.Integer, nullable=False, default=0)

    @property
    def metadata_uri(self):
        if not self.metadata_cid:
            return None
        return f'ipfs://{self.metadata_cid}'


class NFTRecord(db.Model):
    """A platform-held token bound to one track, pending transfer to a buyer."""

    __tablename__ = 'nfts'

    id = db.Column(db.Integer, primary_key=True)
    nft_token_id = db.Column(db.String(64), unique=True)  # one record per on-ledger token
    release_id = db.Column(db.String(64), db.ForeignKey('releases.id'), nullable=False, index=True)
    track_id = db.Column(db.String(64), db.ForeignKey('tracks.id'), nullable=False, index=True)
    edition_number = db.Column(db.Integer)
    owner_address = db.Column(db.String(64))
    status = db.Column(db.String(20), nullable=False, default=NFTStatus.AVAILABLE)
    attempt_id = db.Column(db.String(64), db.ForeignKey('purchase_attempts.id'), index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    track = db.relationship('Track')

    __table_args__ = (
        db.Index('idx_nfts_track_status', 'track_id', 'status'),
    )


class Sale(db.Model):
    """Completed transfer. Rows are inserted once and never updated."""

    __tablename__ = 'sales'

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    release_id = db.Column(db.String(64), db.ForeignKey('releases.id'), nullable=False, index=True)
    track_id = db.Column(db.String(64), db.ForeignKey('tracks.id'), index=True)
    buyer_address = db.Column(db.String(64), nullable=False)
    seller_address = db.Column(db.String(64), nullable=False)
    nft_token_id = db.Column(db.String(64))
    edition_number = db.Column(db.Integer)
    price = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    platform_fee = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    tx_hash = db.Column(db.String(64), index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    release = db.relationship('Release')
    track = db.relationship('Track')


class PurchaseAttempt(db.Model):
    """One album purchase call, from reservation to confirmation or refund."""

    __tablename__ = 'purchase_attempts'

    id = db.Column(db.String(64), primary_key=True, default=new_id)
    release_id = db.Column(db.String(64), db.ForeignKey('releases.id'), nullable=False, index=True)
    buyer_address = db.Column(db.String(64), nullable=False)
    track_price = db.Column(db.Numeric(18, 6), nullable=False)
    total_price = db.Column(db.Numeric(18, 6), nullable=False)
    mint_regime = db.Column(db.String(10), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='in_progress')  # in_progress, listed, failed, completed
    failure_reason = db.Column(db.Text)
    failed_track_id = db.Column(db.String(64))
    refund_status = db.Column(db.String(20), nullable=False, default='none')  # none, refunded, refund_failed
    refund_tx_hash = db.Column(db.String(64))
    artist_payment_tx_hash = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    steps = db.relationship('PurchaseStep', backref='attempt', lazy=True,
                            order_by='PurchaseStep.id')


class PurchaseStep(db.Model):
    __tablename__ = 'purchase_steps'

    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.String(64), db.ForeignKey('purchase_attempts.id'), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)  # reserve, discover, mint, offer, artist_payment, refund
    track_id = db.Column(db.String(64))
    nft_record_id = db.Column(db.Integer)
    reference = db.Column(db.String(128))  # token id, offer index or tx hash
    status = db.Column(db.String(20), nullable=False, default='done')  # done, failed, compensated
    detail = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
