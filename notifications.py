"""Discord buy-bot alerts. Best effort: nothing here may fail a sale."""

from datetime import datetime

import requests
from flask import current_app

SALE_COLOR = 0x3B82F6
SOLD_OUT_COLOR = 0xEF4444


def _short_address(address):
    if not address or len(address) < 12:
        return address or ''
    return f'{address[:6]}...{address[-4:]}'


def _post(payload):
    webhook_url = current_app.config.get('DISCORD_WEBHOOK_URL')
    if not webhook_url:
        current_app.logger.debug('Discord webhook not configured, skipping notification')
        return False

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        current_app.logger.warning(f'Discord webhook error: {e}')
        return False

    if not response.ok:
        current_app.logger.warning(f'Discord webhook failed: {response.status_code} {response.text}')
        return False
    return True


def send_sale_alert(sale, release, track):
    fields = [
        {'name': 'Track', 'value': track.title if track else release.title, 'inline': True},
        {'name': 'Artist', 'value': release.artist_name or 'Unknown Artist', 'inline': True},
        {'name': 'Price', 'value': f'{float(sale.price):g} XRP', 'inline': True},
        {'name': 'Edition', 'value': f'#{sale.edition_number} of {release.total_editions}', 'inline': True},
        {'name': 'Buyer', 'value': f'`{_short_address(sale.buyer_address)}`', 'inline': True},
        {'name': 'Type', 'value': (release.type or 'single').title(), 'inline': True},
    ]
    if sale.tx_hash:
        explorer = current_app.config.get('XRPL_EXPLORER_URL', '')
        fields.append({'name': 'Transaction', 'value': f'[View on XRPL]({explorer}{sale.tx_hash})', 'inline': False})

    embed = {
        'title': 'New NFT Purchase!',
        'color': SALE_COLOR,
        'fields': fields,
        'footer': {'text': 'XRP Music'},
        'timestamp': datetime.utcnow().isoformat(),
    }
    if release.cover_url:
        embed['thumbnail'] = {'url': release.cover_url}
    return _post({'embeds': [embed]})


def send_sold_out_alert(release):
    embed = {
        'title': 'SOLD OUT!',
        'description': f'**{release.title}** by {release.artist_name or "Unknown Artist"}',
        'color': SOLD_OUT_COLOR,
        'fields': [{'name': 'Details', 'value': f'All {release.total_editions} editions sold'}],
        'footer': {'text': 'XRP Music'},
        'timestamp': datetime.utcnow().isoformat(),
    }
    if release.cover_url:
        embed['thumbnail'] = {'url': release.cover_url}
    return _post({'embeds': [embed]})
