"""
XRP Ledger client adapter.

Wraps xrpl-py so the broker only sees plain result dicts and BrokerError
subclasses. All transactions are signed by the platform wallet and submitted
with submit_and_wait, which blocks until the transaction is validated or its
LastLedgerSequence has passed.
"""

import logging
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional

import httpx
from xrpl.clients import JsonRpcClient
from xrpl.constants import XRPLException
from xrpl.models.requests import AccountNFTs, NFTSellOffers, Tx
from xrpl.models.transactions import (
    Memo,
    NFTokenCancelOffer,
    NFTokenCreateOffer,
    NFTokenCreateOfferFlag,
    NFTokenMint,
    NFTokenMintFlag,
    Payment,
)
from xrpl.transaction import submit_and_wait
from xrpl.utils import str_to_hex, xrp_to_drops
from xrpl.wallet import Wallet

from errors import ConfigurationError, LedgerTransactionFailed

logger = logging.getLogger(__name__)

MEMO_TYPE = 'XRPMusic'
ACCOUNT_NFTS_PAGE_SIZE = 400
MAX_TRANSFER_FEE = 50000  # 50%, ledger maximum
XRP_QUANTUM = Decimal('0.000001')


def uri_to_hex(uri: str) -> str:
    return str_to_hex(uri).upper()


def to_drops(amount_xrp) -> str:
    amount = Decimal(str(amount_xrp)).quantize(XRP_QUANTUM, rounding=ROUND_DOWN)
    return xrp_to_drops(amount)


def result_code(result: Dict[str, Any]) -> Optional[str]:
    return (result.get('meta') or {}).get('TransactionResult')


class XRPLLedgerClient:
    """Platform-wallet view of the ledger: submit, read inventory, read offers."""

    def __init__(self, rpc_url: str, platform_address: str, platform_seed: str):
        self.rpc_url = rpc_url
        self._platform_address = platform_address
        self._platform_seed = platform_seed
        self.client: Optional[JsonRpcClient] = None
        self.wallet: Optional[Wallet] = None

    @property
    def platform_address(self) -> str:
        return self._platform_address

    def is_configured(self) -> bool:
        return bool(self._platform_address and self._platform_seed)

    def connect(self) -> 'XRPLLedgerClient':
        if self.client is not None:
            return self
        if not self.is_configured():
            raise ConfigurationError('Platform not configured')

        wallet = Wallet.from_seed(self._platform_seed)
        if wallet.classic_address != self._platform_address:
            raise ConfigurationError('Invalid platform wallet - seed does not match PLATFORM_WALLET_ADDRESS')

        self.wallet = wallet
        self.client = JsonRpcClient(self.rpc_url)
        logger.info(f'Connected to XRPL at {self.rpc_url} as {self._platform_address}')
        return self

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def submit(self, transaction) -> Dict[str, Any]:
        """Sign with the platform wallet, submit, and wait for a validated tesSUCCESS."""
        self.connect()
        tx_type = type(transaction).__name__
        try:
            response = submit_and_wait(transaction, self.client, self.wallet)
        except (XRPLException, httpx.HTTPError) as e:
            logger.error(f'{tx_type} submission failed: {e}')
            raise LedgerTransactionFailed(f'{tx_type} failed: {e}') from e

        result = response.result
        code = result_code(result)
        if not response.is_successful() or code != 'tesSUCCESS':
            logger.error(f'{tx_type} did not succeed: {code}')
            raise LedgerTransactionFailed(f'{tx_type} failed: {code}', result_code=code)

        logger.info(f"{tx_type} validated: {result.get('hash')}")
        return result

    def mint_nft(self, uri: str, transfer_fee: int) -> Dict[str, Any]:
        mint_tx = NFTokenMint(
            account=self._platform_address,
            uri=uri_to_hex(uri),
            flags=NFTokenMintFlag.TF_TRANSFERABLE,
            transfer_fee=min(int(transfer_fee), MAX_TRANSFER_FEE),
            nftoken_taxon=0,
        )
        return self.submit(mint_tx)

    def create_sell_offer(self, nft_id: str, destination: str, amount_drops: str = '1') -> Dict[str, Any]:
        offer_tx = NFTokenCreateOffer(
            account=self._platform_address,
            nftoken_id=nft_id,
            amount=amount_drops,
            flags=NFTokenCreateOfferFlag.TF_SELL_NFTOKEN,
            destination=destination,
        )
        return self.submit(offer_tx)

    def cancel_offers(self, offer_ids: List[str]) -> Dict[str, Any]:
        cancel_tx = NFTokenCancelOffer(
            account=self._platform_address,
            nftoken_offers=list(offer_ids),
        )
        return self.submit(cancel_tx)

    def send_payment(self, destination: str, amount_xrp, memo_text: str) -> str:
        """Pay XRP from the platform wallet. Returns the transaction hash."""
        payment_tx = Payment(
            account=self._platform_address,
            destination=destination,
            amount=to_drops(amount_xrp),
            memos=[Memo(memo_type=str_to_hex(MEMO_TYPE), memo_data=str_to_hex(memo_text))],
        )
        return self.submit(payment_tx)['hash']

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _request(self, request) -> Dict[str, Any]:
        self.connect()
        try:
            response = self.client.request(request)
        except (XRPLException, httpx.HTTPError) as e:
            raise LedgerTransactionFailed(f'{type(request).__name__} request failed: {e}') from e
        return response

    def get_account_nfts(self, account: Optional[str] = None) -> List[Dict[str, Any]]:
        """Every NFT held by ``account`` (platform wallet by default), following markers."""
        account = account or self._platform_address
        nfts: List[Dict[str, Any]] = []
        marker = None
        while True:
            response = self._request(AccountNFTs(account=account, limit=ACCOUNT_NFTS_PAGE_SIZE, marker=marker))
            if not response.is_successful():
                raise LedgerTransactionFailed(f"account_nfts failed: {response.result.get('error')}")
            nfts.extend(response.result.get('account_nfts', []))
            marker = response.result.get('marker')
            if not marker:
                break
        return nfts

    def get_sell_offers(self, nft_id: str) -> List[Dict[str, Any]]:
        response = self._request(NFTSellOffers(nft_id=nft_id))
        if not response.is_successful():
            # objectNotFound just means there are no offers for this token
            if response.result.get('error') == 'objectNotFound':
                return []
            raise LedgerTransactionFailed(f"nft_sell_offers failed: {response.result.get('error')}")
        return response.result.get('offers', [])

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        response = self._request(Tx(transaction=tx_hash))
        if not response.is_successful():
            if response.result.get('error') == 'txnNotFound':
                return None
            raise LedgerTransactionFailed(f"tx lookup failed: {response.result.get('error')}")
        return response.result

    def get_status(self) -> Dict[str, Any]:
        return {
            'configured': self.is_configured(),
            'connected': self.client is not None,
            'rpc_url': self.rpc_url,
            'platform_address': self._platform_address or None,
        }
