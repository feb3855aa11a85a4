"""Configuration: platform wallet, ledger endpoint, database, fees."""
import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
INSTANCE_DIR = os.path.join(BASE_DIR, 'instance')

# Database (SQLite file under instance/ unless DATABASE_URL is set)
SQLALCHEMY_DATABASE_URI = os.getenv(
    'DATABASE_URL',
    f"sqlite:///{os.path.join(INSTANCE_DIR, 'xrpmusic.db')}",
)
SQLALCHEMY_TRACK_MODIFICATIONS = False

# XRPL
XRPL_RPC_URL = os.getenv('XRPL_RPC_URL', 'https://xrplcluster.com/')
PLATFORM_WALLET_ADDRESS = os.getenv('PLATFORM_WALLET_ADDRESS', '')
PLATFORM_WALLET_SEED = os.getenv('PLATFORM_WALLET_SEED', '')
XRPL_EXPLORER_URL = os.getenv('XRPL_EXPLORER_URL', 'https://livenet.xrpl.org/transactions/')

# Platform fee (percent)
PLATFORM_FEE_PERCENT = float(os.getenv('PLATFORM_FEE_PERCENT', '2'))

# Confirmation checks the buyer's accept transaction on the ledger
VERIFY_ACCEPT_TRANSACTIONS = os.getenv('VERIFY_ACCEPT_TRANSACTIONS', 'true').lower() in ('1', 'true', 'yes')

# Purchases stuck in_progress longer than this get compensated by `flask reconcile-purchases`
STALE_ATTEMPT_MINUTES = int(os.getenv('STALE_ATTEMPT_MINUTES', '30'))

# Discord buy bot (optional)
DISCORD_WEBHOOK_URL = os.getenv('DISCORD_WEBHOOK_URL', '')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
