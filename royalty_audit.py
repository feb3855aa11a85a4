"""
Mint provenance and royalty audit.

A secondary sale is one where neither the artist nor the platform is the
seller. For lazy-minted releases the platform wallet is the on-chain issuer,
so the resale royalty landed in the platform wallet and is still owed to the
artist. Legacy releases were minted by the artist, who was paid directly.

Read-only: nothing in this module writes to the database.
"""

from decimal import Decimal

from sqlalchemy import or_

from errors import InvalidRequest, NotFound
from models import MintRegime, Release, Sale, Track, db


def _money(value):
    return float(value or 0)


def royalty_terms(sale, release):
    regime = release.mint_regime
    royalty_percent = release.effective_royalty_percent
    royalty = Decimal(str(sale.price or 0)) * royalty_percent / Decimal(100)
    is_lazy = regime is MintRegime.LAZY
    return {
        'mintType': 'lazy_mint' if is_lazy else 'pre_mint',
        'badgeType': 'legacy' if is_lazy else 'og',
        'royaltyPercent': float(royalty_percent),
        'estimatedRoyalty': royalty,
        'royaltyRecipient': 'platform_wallet' if is_lazy else 'artist',
        'royaltyOwedToArtist': royalty if is_lazy else Decimal(0),
    }


def _sale_row(sale, release, track):
    terms = royalty_terms(sale, release)
    return {
        'id': sale.id,
        'releaseId': sale.release_id,
        'trackId': sale.track_id,
        'buyerAddress': sale.buyer_address,
        'sellerAddress': sale.seller_address,
        'nftTokenId': sale.nft_token_id,
        'editionNumber': sale.edition_number,
        'price': _money(sale.price),
        'platformFee': _money(sale.platform_fee),
        'txHash': sale.tx_hash,
        'createdAt': sale.created_at.isoformat() if sale.created_at else None,
        'releaseTitle': release.title,
        'artistName': release.artist_name,
        'artistAddress': release.artist_address,
        'trackTitle': track.title if track else None,
        'coverUrl': release.cover_url,
        'mintType': terms['mintType'],
        'badgeType': terms['badgeType'],
        'royaltyPercent': terms['royaltyPercent'],
        'estimatedRoyalty': _money(terms['estimatedRoyalty']),
        'royaltyRecipient': terms['royaltyRecipient'],
        'royaltyOwedToArtist': _money(terms['royaltyOwedToArtist']),
    }


def secondary_sales(platform_address, wallet=None, lazy_only=False):
    """(sale, release, track) rows for every resale, newest first."""
    query = db.session.query(Sale, Release, Track) \
        .join(Release, Release.id == Sale.release_id) \
        .outerjoin(Track, Track.id == Sale.track_id) \
        .filter(Sale.seller_address != Release.artist_address)
    if platform_address:
        query = query.filter(Sale.seller_address != platform_address)
    if lazy_only:
        query = query.filter(Release.mint_fee_paid.is_(True))
    if wallet:
        query = query.filter(or_(Release.artist_address == wallet,
                                 Sale.seller_address == wallet,
                                 Sale.buyer_address == wallet))
    return query.order_by(Sale.created_at.desc()).all()


def get_secondary_sales(platform_address, wallet=None):
    rows = [_sale_row(sale, release, track) for sale, release, track in secondary_sales(platform_address, wallet)]
    total_owed = sum(Decimal(str(r['royaltyOwedToArtist'])) for r in rows)
    return {
        'secondarySales': rows,
        'totalCount': len(rows),
        'totalRoyaltyOwedToArtists': _money(total_owed),
    }


def get_sale_detail(sale_id):
    if not sale_id:
        raise InvalidRequest('sale_id required')
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFound('Sale not found')
    return _sale_row(sale, sale.release, sale.track)


def get_mint_audit(wallet=None):
    query = Release.query
    if wallet:
        query = query.filter(Release.artist_address == wallet)
    releases = query.order_by(Release.created_at.desc()).all()

    categorized = {'preLazyMint': [], 'lazyMint': [], 'verified': []}
    for release in releases:
        is_lazy = release.mint_regime is MintRegime.LAZY
        issuer = 'platform_wallet' if is_lazy else 'artist'
        entry = {
            'id': release.id,
            'title': release.title,
            'artistName': release.artist_name,
            'artistAddress': release.artist_address,
            'type': release.type,
            'totalEditions': release.total_editions,
            'soldEditions': release.sold_editions,
            'mintedEditions': release.minted_editions,
            'mintFeePaid': release.mint_fee_paid,
            'isMinted': release.is_minted,
            'status': release.status,
            'royaltyPercent': float(release.effective_royalty_percent),
            'songPrice': _money(release.song_price),
            'trackCount': len(release.tracks),
            'totalSales': Sale.query.filter_by(release_id=release.id).count(),
            'mintType': 'lazy_mint' if is_lazy else 'pre_mint',
            'badgeType': 'legacy' if is_lazy else 'og',
            'issuerOnChain': issuer,
            'royaltyRecipient': issuer,
        }
        categorized['lazyMint' if is_lazy else 'preLazyMint'].append(entry)

    return {
        'releases': categorized,
        'counts': {
            'preLazyMint': len(categorized['preLazyMint']),
            'lazyMint': len(categorized['lazyMint']),
            'verified': len(categorized['verified']),
            'total': len(releases),
        },
    }


def get_royalty_liability(platform_address, wallet=None):
    """Royalties each artist is owed from resales of their lazy-minted releases."""
    by_artist = {}
    rows = secondary_sales(platform_address, lazy_only=True)
    for sale, release, track in rows:
        if wallet and release.artist_address != wallet:
            continue
        owed = royalty_terms(sale, release)['royaltyOwedToArtist']
        artist = by_artist.setdefault(release.artist_address, {
            'artistAddress': release.artist_address,
            'artistName': release.artist_name,
            'sales': [],
            'totalOwed': Decimal(0),
        })
        artist['sales'].append({
            'saleId': sale.id,
            'price': _money(sale.price),
            'txHash': sale.tx_hash,
            'saleDate': sale.created_at.isoformat() if sale.created_at else None,
            'nftTokenId': sale.nft_token_id,
            'buyerAddress': sale.buyer_address,
            'sellerAddress': sale.seller_address,
            'releaseTitle': release.title,
            'trackTitle': track.title if track else None,
            'royaltyPercent': float(release.effective_royalty_percent),
            'royaltyOwed': _money(owed),
        })
        artist['totalOwed'] += owed

    artists = sorted(by_artist.values(), key=lambda a: a['totalOwed'], reverse=True)
    grand_total = sum((a['totalOwed'] for a in artists), Decimal(0))
    for artist in artists:
        artist['totalOwed'] = _money(artist['totalOwed'])

    return {
        'artists': artists,
        'grandTotalOwed': _money(grand_total),
        'totalSecondarySales': sum(len(a['sales']) for a in artists),
    }


def _release_counts(releases):
    lazy = sum(1 for r in releases if r.mint_regime is MintRegime.LAZY)
    pre_mint = sum(1 for r in releases if r.is_minted and r.mint_regime is MintRegime.LEGACY)
    return {'lazyMint': lazy, 'preMint': pre_mint, 'total': len(releases)}


def get_summary(platform_address, wallet=None):
    rows = secondary_sales(platform_address)
    affected = [(s, r) for s, r, _ in rows if r.mint_regime is MintRegime.LAZY]
    owed = sum((royalty_terms(s, r)['royaltyOwedToArtist'] for s, r in affected), Decimal(0))

    result = {
        'releases': _release_counts(Release.query.all()),
        'secondarySales': {
            'count': len(rows),
            'volume': _money(sum((Decimal(str(s.price or 0)) for s, _, _ in rows), Decimal(0))),
        },
        'royaltyIssue': {
            'affectedSalesCount': len(affected),
            'affectedSalesVolume': _money(sum((Decimal(str(s.price or 0)) for s, _ in affected), Decimal(0))),
            'estimatedRoyaltyOwed': _money(owed),
            'affectedArtists': len({r.artist_address for _, r in affected}),
        },
    }

    if wallet:
        mine = secondary_sales(platform_address, wallet)
        my_owed = sum(
            (royalty_terms(s, r)['royaltyOwedToArtist'] for s, r, _ in mine if r.artist_address == wallet),
            Decimal(0),
        )
        result['personal'] = {
            'releases': _release_counts(Release.query.filter_by(artist_address=wallet).all()),
            'secondarySales': {
                'count': len(mine),
                'volume': _money(sum((Decimal(str(s.price or 0)) for s, _, _ in mine), Decimal(0))),
            },
            'royaltyOwed': _money(my_owed),
        }

    return result


def run_audit(action, platform_address, wallet=None, sale_id=None):
    action = action or 'summary'
    if action == 'summary':
        return get_summary(platform_address, wallet)
    if action == 'secondary-sales':
        return get_secondary_sales(platform_address, wallet)
    if action == 'mint-audit':
        return get_mint_audit(wallet)
    if action == 'royalty-liability':
        return get_royalty_liability(platform_address, wallet)
    if action == 'sale-detail':
        return get_sale_detail(sale_id)
    raise InvalidRequest('Unknown action')
