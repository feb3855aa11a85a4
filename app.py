import os

import click
from flask import Blueprint, Flask, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from availability import check_availability
from broker import purchase_album
from confirmation import confirm_sales
from errors import BrokerError, PurchaseAborted
from ledger import XRPLLedgerClient
from maintenance import diagnose_inventory, reconcile_stale_attempts, repair_sales_counters
from models import db
from royalty_audit import run_audit
from transaction_tracker import TransactionTracker

api = Blueprint('api', __name__)
transaction_tracker = TransactionTracker()


def get_ledger():
    return current_app.extensions['ledger']


def error_response(e):
    return jsonify({'error': str(e)}), e.status_code


@api.after_request
def add_cors_headers(response):
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return response


@api.route('/api/releases/<release_id>/availability', methods=['GET'])
def release_availability(release_id):
    try:
        return jsonify(check_availability(release_id, get_ledger()))
    except BrokerError as e:
        return error_response(e)
    except SQLAlchemyError as e:
        current_app.logger.error(f'Availability check failed for {release_id}: {str(e)}')
        return jsonify({'error': 'Availability check failed', 'details': str(e)}), 500


@api.route('/api/broker-album-sale', methods=['POST', 'OPTIONS'])
def broker_album_sale():
    if request.method == 'OPTIONS':
        return '', 200

    if not request.is_json:
        return jsonify({'error': 'Missing JSON data'}), 400

    data = request.get_json()
    if data.get('action') == 'confirm':
        return handle_confirm_sale(data)
    return handle_album_purchase(data)


def handle_album_purchase(data):
    try:
        result = purchase_album(data.get('releaseId'), data.get('buyerAddress'), get_ledger(),
                                tracker=transaction_tracker)
        return jsonify(result)
    except PurchaseAborted as e:
        return jsonify({
            'error': str(e),
            'refunded': e.refunded,
            'failedTrack': e.track_title,
            'attemptId': e.attempt_id,
        }), e.status_code
    except BrokerError as e:
        current_app.logger.error(f'Album purchase rejected: {str(e)}')
        return error_response(e)


def handle_confirm_sale(data):
    try:
        result = confirm_sales(data.get('pendingSales'), data.get('acceptTxHashes'), get_ledger(),
                               tracker=transaction_tracker)
    except BrokerError as e:
        return jsonify({'error': 'Failed to confirm sale', 'details': str(e)}), e.status_code
    except SQLAlchemyError as e:
        current_app.logger.error(f'Confirm album sale error: {str(e)}')
        return jsonify({'error': 'Failed to confirm sale', 'details': str(e)}), 500

    if result['failures']:
        return jsonify({
            'error': 'Some sales could not be confirmed',
            'details': '; '.join(f['error'] for f in result['failures']),
            **result,
        }), 400
    return jsonify(result)


@api.route('/api/purchases/<attempt_id>', methods=['GET'])
def purchase_status(attempt_id):
    status = transaction_tracker.get_attempt_status(attempt_id)
    if 'error' in status:
        return jsonify(status), 404
    return jsonify(status)


@api.route('/api/royalty-audit', methods=['GET', 'POST'])
def royalty_audit():
    body = request.get_json(silent=True) or {}
    action = request.args.get('action') or body.get('action') or 'summary'
    wallet = request.args.get('wallet') or body.get('wallet')
    sale_id = request.args.get('sale_id') or body.get('sale_id')

    try:
        return jsonify(run_audit(action, current_app.config['PLATFORM_WALLET_ADDRESS'], wallet, sale_id))
    except BrokerError as e:
        return error_response(e)
    except SQLAlchemyError as e:
        current_app.logger.error(f'Royalty audit error: {str(e)}')
        return jsonify({'error': 'Royalty audit failed', 'details': str(e)}), 500


@api.route('/health', methods=['GET'])
def health():
    ledger = get_ledger()
    return jsonify({
        'ledger': ledger.get_status(),
        'database': current_app.config['SQLALCHEMY_DATABASE_URI'].split(':', 1)[0],
        'verifyAcceptTransactions': current_app.config['VERIFY_ACCEPT_TRANSACTIONS'],
    })


@click.command('reconcile-purchases')
@click.option('--max-age', type=int, default=None, help='Minutes before an in-progress purchase is stale.')
def reconcile_purchases_command(max_age):
    """Release reservations and refund buyers of purchases that never finished."""
    max_age = max_age if max_age is not None else current_app.config['STALE_ATTEMPT_MINUTES']
    results = reconcile_stale_attempts(get_ledger(), transaction_tracker, max_age)
    for r in results:
        click.echo(f"{r['attemptId']}: refunded={r['refunded']} {r['refundTxHash'] or ''}")
    click.echo(f'Reconciled {len(results)} purchase(s)')


@click.command('repair-sales-counters')
@click.option('--release-id', default=None)
def repair_sales_counters_command(release_id):
    """Sync track sold counts and release sold editions with recorded sales."""
    fixes = repair_sales_counters(release_id)
    for fix in fixes:
        click.echo(f"{fix['type']} {fix['title']}: {fix['was']} -> {fix['now']}")
    click.echo(f'{len(fixes)} fix(es) applied')


@click.command('diagnose-inventory')
def diagnose_inventory_command():
    """Compare tokens in the platform wallet with recorded sales."""
    report = diagnose_inventory(get_ledger())
    click.echo(f"{report['totalNFTsInWallet']} NFTs in {report['platformWallet']}, "
               f"{report['tracksWithDiscrepancies']} of {report['tracksChecked']} tracks with discrepancies")
    for entry in report['discrepancies']:
        click.echo(f"  {entry['track']}: wallet={entry['inPlatformWallet']} sales={entry['dbSalesCount']}")


def create_app(test_config=None, ledger=None):
    app = Flask(__name__)
    app.config.from_object('config')
    if test_config:
        app.config.update(test_config)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///'):
        os.makedirs(app.config['INSTANCE_DIR'], exist_ok=True)

    db.init_app(app)
    app.extensions['ledger'] = ledger or XRPLLedgerClient(
        app.config['XRPL_RPC_URL'],
        app.config['PLATFORM_WALLET_ADDRESS'],
        app.config['PLATFORM_WALLET_SEED'],
    )
    if not app.extensions['ledger'].is_configured():
        app.logger.warning('Platform wallet not configured - purchases will be rejected')

    app.register_blueprint(api)
    app.cli.add_command(reconcile_purchases_command)
    app.cli.add_command(repair_sales_counters_command)
    app.cli.add_command(diagnose_inventory_command)

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            app.logger.error(f'Database initialization error: {str(e)}')

    return app


if __name__ == '__main__':
    app = create_app()
    debug_mode = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=debug_mode)
