"""
Bridge - Bitcoin Core RPC Client

JSON-RPC client for the node queries the verifier needs: outpoint lookups,
confirmations, block headers, fee estimation and broadcast. Requests go
through a pooled requests session with urllib3 retries.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from urllib3.util.retry import Retry


class RPCError(Exception):
    """Base exception for RPC-related errors."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


class RPCConnectionError(RPCError):
    """Exception for RPC connection failures."""
    pass


class RPCAuthError(RPCError):
    """Exception for RPC authentication failures."""
    pass


class RPCTimeoutError(RPCError):
    """Exception for RPC timeout errors."""
    pass


# Default RPC ports per network
DEFAULT_PORTS = {
    "mainnet": 8332,
    "testnet": 18332,
    "signet": 38332,
    "regtest": 18443,
}


@dataclass
class RPCConfig:
    """Configuration for Bitcoin Core RPC connection."""
    host: str = "localhost"
    port: int = 18443
    username: Optional[str] = None
    password: Optional[str] = None
    cookie_file: Optional[str] = None
    wallet: Optional[str] = None
    timeout: int = 30
    max_retries: int = 3
    backoff_factor: float = 0.5
    use_ssl: bool = False

    def __post_init__(self):
        if not self.username and not self.cookie_file:
            self.cookie_file = self._find_cookie_file()

        if not self.username and not self.cookie_file:
            raise ValueError("Either username/password or cookie file must be provided")

    def _find_cookie_file(self) -> Optional[str]:
        """Try to find Bitcoin Core cookie file in standard locations."""
        possible_paths = [
            "~/.bitcoin/regtest/.cookie",
            "~/.bitcoin/signet/.cookie",
            "~/.bitcoin/testnet3/.cookie",
            "~/.bitcoin/.cookie",
        ]

        for path in possible_paths:
            expanded_path = Path(path).expanduser()
            if expanded_path.exists():
                return str(expanded_path)

        return None

    @property
    def url(self) -> str:
        protocol = "https" if self.use_ssl else "http"
        base = f"{protocol}://{self.host}:{self.port}/"
        return f"{base}wallet/{self.wallet}" if self.wallet else base

    @classmethod
    def from_settings(cls, settings) -> 'RPCConfig':
        """Create RPC config from the rpc section of a BridgeConfig."""
        return cls(
            host=settings.host,
            port=settings.port,
            username=settings.username,
            password=settings.password,
            cookie_file=settings.cookie_file,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
        )

    @classmethod
    def from_env(cls) -> 'RPCConfig':
        """Create RPC config from BITCOIN_RPC_* environment variables."""
        return cls(
            host=os.getenv("BITCOIN_RPC_HOST", "localhost"),
            port=int(os.getenv("BITCOIN_RPC_PORT", "18443")),
            username=os.getenv("BITCOIN_RPC_USER"),
            password=os.getenv("BITCOIN_RPC_PASSWORD"),
            cookie_file=os.getenv("BITCOIN_RPC_COOKIE_FILE"),
            wallet=os.getenv("BITCOIN_RPC_WALLET"),
            timeout=int(os.getenv("BITCOIN_RPC_TIMEOUT", "30")),
            max_retries=int(os.getenv("BITCOIN_RPC_MAX_RETRIES", "3")),
            use_ssl=os.getenv("BITCOIN_RPC_SSL", "false").lower() == "true"
        )


class BitcoinRPCClient:
    """
    Bitcoin Core RPC client with the calls used by the bridge.
    """

    def __init__(self, config: Optional[RPCConfig] = None):
        """
        Initialize Bitcoin RPC client.

        Args:
            config: RPC configuration (uses environment if None)
        """
        self.config = config or RPCConfig.from_env()
        self.logger = logging.getLogger(__name__)
        self._request_counter = 0

        self.session = requests.Session()
        retry_strategy = Retry(
            total=self.config.max_retries,
            backoff_factor=self.config.backoff_factor,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=["POST"]
        )
        adapter = HTTPAdapter(max_retries=retry_strategy, pool_maxsize=10)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self._setup_auth()

    def _setup_auth(self):
        """Set up authentication for the session."""
        if self.config.username and self.config.password:
            self.session.auth = HTTPBasicAuth(self.config.username, self.config.password)
            self.logger.debug("Using basic authentication")
            return

        try:
            with open(self.config.cookie_file, 'r') as f:
                cookie_content = f.read().strip()
        except OSError as e:
            raise RPCAuthError(-1, f"Failed to read cookie file {self.config.cookie_file}: {e}") from e

        if ':' not in cookie_content:
            raise RPCAuthError(-1, f"Invalid cookie file format: {self.config.cookie_file}")
        username, password = cookie_content.split(':', 1)
        self.session.auth = HTTPBasicAuth(username, password)
        self.logger.debug(f"Using cookie file authentication: {self.config.cookie_file}")

    def _call(self, method: str, *params) -> Any:
        """
        Make an RPC call and return the result.

        Args:
            method: RPC method name
            *params: Method parameters

        Returns:
            RPC call result

        Raises:
            RPCError: If RPC call fails
        """
        self._request_counter += 1
        payload = {
            "jsonrpc": "1.0",
            "method": method,
            "params": list(params),
            "id": f"bridge_{self._request_counter}"
        }
        start_time = time.time()

        try:
            response = self.session.post(
                self.config.url,
                data=json.dumps(payload),
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout
            )
        except requests.exceptions.Timeout as e:
            self.logger.error(f"RPC call {method} timed out after {self.config.timeout}s")
            raise RPCTimeoutError(-1, f"Request timed out after {self.config.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            self.logger.error(f"RPC call {method} failed to connect: {e}")
            raise RPCConnectionError(-1, f"Connection error: {e}") from e
        except requests.exceptions.RequestException as e:
            self.logger.error(f"RPC call {method} failed: {e}")
            raise RPCError(-1, f"Request failed: {e}") from e

        if response.status_code == 401:
            raise RPCAuthError(401, "Authentication failed")

        # Bitcoin Core reports RPC errors with HTTP 404/500 and a JSON body
        try:
            body = response.json()
        except ValueError as e:
            if response.status_code != 200:
                raise RPCConnectionError(
                    response.status_code, f"HTTP {response.status_code}: {response.reason}"
                ) from e
            raise RPCError(-32700, f"Invalid JSON response: {e}") from e

        error = body.get("error")
        if error:
            self.logger.error(f"RPC call {method} returned error {error.get('code')}: {error.get('message')}")
            raise RPCError(error.get("code", -1), error.get("message", "unknown error"), error.get("data"))

        self.logger.debug(f"RPC {method} completed in {time.time() - start_time:.3f}s")
        return body.get("result")

    # Blockchain

    def getblockcount(self) -> int:
        """Get the current block height."""
        return self._call("getblockcount")

    def getblockhash(self, height: int) -> str:
        return self._call("getblockhash", height)

    def getblockheader(self, block_hash: str, verbose: bool = True) -> Union[str, Dict[str, Any]]:
        return self._call("getblockheader", block_hash, verbose)

    def gettxout(self, txid: str, vout: int, include_mempool: bool = True) -> Optional[Dict[str, Any]]:
        """
        Get details about an unspent output.

        Args:
            txid: Transaction ID
            vout: Output index
            include_mempool: Whether mempool spends count

        Returns:
            Output details, or None if spent or unknown
        """
        return self._call("gettxout", txid, vout, include_mempool)

    def getrawtransaction(self, txid: str, verbose: bool = False,
                          blockhash: Optional[str] = None) -> Union[str, Dict[str, Any]]:
        if blockhash:
            return self._call("getrawtransaction", txid, verbose, blockhash)
        return self._call("getrawtransaction", txid, verbose)

    # Transactions

    def sendrawtransaction(self, hex_string: str, max_fee_rate: Optional[float] = None) -> str:
        """
        Broadcast a raw transaction.

        Args:
            hex_string: Serialized transaction
            max_fee_rate: Reject if the fee rate is above this (BTC/kvB)

        Returns:
            Transaction ID
        """
        if max_fee_rate is not None:
            return self._call("sendrawtransaction", hex_string, max_fee_rate)
        return self._call("sendrawtransaction", hex_string)

    def estimatesmartfee(self, conf_target: int, estimate_mode: str = "CONSERVATIVE") -> Dict[str, Any]:
        return self._call("estimatesmartfee", conf_target, estimate_mode)

    # Wallet (regtest helpers)

    def sendtoaddress(self, address: str, amount_btc: float) -> str:
        return self._call("sendtoaddress", address, amount_btc)

    def getnewaddress(self, label: str = "", address_type: Optional[str] = None) -> str:
        if address_type:
            return self._call("getnewaddress", label, address_type)
        return self._call("getnewaddress", label)

    def generatetoaddress(self, nblocks: int, address: str) -> List[str]:
        return self._call("generatetoaddress", nblocks, address)

    def test_connection(self) -> bool:
        """Test if connection to Bitcoin Core is working."""
        try:
            return isinstance(self.getblockcount(), int)
        except RPCError as e:
            self.logger.error(f"Connection test failed: {e}")
            return False

    def close(self):
        """Close the RPC client."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
