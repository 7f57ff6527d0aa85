# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.service module

Main service loop that wires together the mock components:
  - HTTP server (falcon WSGI via wsgiref, one thread per request)
  - Periodic replay of executor events into the shadow store
  - Periodic fulfillment of gateway decryption requests

Configuration is loaded from environment variables with sensible defaults.
"""

import logging
import os
import threading
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from web3 import Web3

from fhevm_mock.abis import ACL_ABI, GATEWAY_ABI, load_contract_abi
from fhevm_mock.coprocessor import DEFAULT_MAX_RETRIES, HandleShadowEngine
from fhevm_mock.encryption import EncryptionMockService
from fhevm_mock.gateway import DecryptionFulfillmentService
from fhevm_mock.http_server import create_app
from fhevm_mock.shadow_store import ShadowStore
from fhevm_mock.signing import COPROCESSOR_DOMAIN, KMS_DOMAIN, SigningAuthority

logger = logging.getLogger("fhevm_mock")

# Default configuration values
DEFAULTS = {
    "ETH_RPC_URL": "http://127.0.0.1:8545",
    "ETH_CHAIN_ID": "31337",
    "ACL_ADDRESS": "",
    "EXECUTOR_ADDRESS": "",
    "GATEWAY_ADDRESS": "",
    "KMS_VERIFIER_ADDRESS": "",
    "INPUT_VERIFIER_ADDRESS": "",
    "PRIVATE_KEY_COPROCESSOR_ACCOUNT": "",
    "PRIVATE_KEY_KMS_SIGNER": "",
    "MOCK_PORT": "3000",
    "POLL_INTERVAL": "1",
    "SHADOW_DB_PATH": ":memory:",
    "MOCKED": "true",
    "CLEAR_TEXT_MAX_RETRIES": str(DEFAULT_MAX_RETRIES),
    # Compiled artifacts replacing the built-in ABI fragments, if set
    "GATEWAY_ABI_PATH": "",
    "ACL_ABI_PATH": "",
}

HTTP_JOIN_TIMEOUT = 5.0  # seconds

ADDRESS_KEYS = (
    "ACL_ADDRESS",
    "EXECUTOR_ADDRESS",
    "GATEWAY_ADDRESS",
    "KMS_VERIFIER_ADDRESS",
    "INPUT_VERIFIER_ADDRESS",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def load_config():
    """Load service configuration from environment variables.

    Returns:
        dict with all configuration values.
    """
    config = {}
    for key, default in DEFAULTS.items():
        config[key] = os.environ.get(key, default)
    # Parse numeric and boolean values
    config["ETH_CHAIN_ID"] = int(config["ETH_CHAIN_ID"])
    config["MOCK_PORT"] = int(config["MOCK_PORT"])
    config["POLL_INTERVAL"] = float(config["POLL_INTERVAL"])
    config["CLEAR_TEXT_MAX_RETRIES"] = int(config["CLEAR_TEXT_MAX_RETRIES"])
    config["MOCKED"] = config["MOCKED"].strip().lower() in _TRUE_VALUES
    return config


def setup_web3(config):
    """Create a Web3 instance connected to the configured RPC endpoint.

    Args:
        config: dict from load_config().

    Returns:
        A connected Web3 instance.
    """
    w3 = Web3(Web3.HTTPProvider(config["ETH_RPC_URL"]))
    if not w3.is_connected():
        raise ConnectionError(
            f"Cannot connect to Ethereum node at {config['ETH_RPC_URL']}"
        )
    return w3


def contract_addresses(config):
    """Return the checksummed contract addresses from the config.

    Raises:
        ValueError: if an address is missing or malformed.
    """
    missing = [key for key in ADDRESS_KEYS if not config.get(key)]
    if missing:
        raise ValueError(f"Missing contract addresses: {', '.join(missing)}")
    addresses = {}
    for key in ADDRESS_KEYS:
        if not Web3.is_address(config[key]):
            raise ValueError(f"{key} is not a valid address: {config[key]}")
        addresses[key] = Web3.to_checksum_address(config[key])
    return addresses


def contract_abi(config, path_key, default):
    """The ABI from the artifact named by config[path_key], or the default."""
    path = config.get(path_key)
    if not path:
        return default
    logger.info("Loading %s from %s", path_key[:-len("_PATH")], path)
    return load_contract_abi(path)


def setup_signers(config, addresses):
    """Create the coprocessor and KMS signing authorities.

    Returns:
        tuple of (coprocessor_signer, kms_signers). A signer whose key is
        not configured is left out, so requests needing it fail with a
        SigningConfigurationError instead of the service refusing to start.
    """
    chain_id = config["ETH_CHAIN_ID"]
    coprocessor_signer = None
    if config["PRIVATE_KEY_COPROCESSOR_ACCOUNT"]:
        coprocessor_signer = SigningAuthority(
            config["PRIVATE_KEY_COPROCESSOR_ACCOUNT"],
            COPROCESSOR_DOMAIN,
            addresses["INPUT_VERIFIER_ADDRESS"],
            chain_id,
        )
    kms_signers = []
    if config["PRIVATE_KEY_KMS_SIGNER"]:
        kms_signers.append(SigningAuthority(
            config["PRIVATE_KEY_KMS_SIGNER"],
            KMS_DOMAIN,
            addresses["KMS_VERIFIER_ADDRESS"],
            chain_id,
        ))
    if coprocessor_signer is None:
        logger.warning("PRIVATE_KEY_COPROCESSOR_ACCOUNT not set, /encrypt will fail")
    if not kms_signers:
        logger.warning("PRIVATE_KEY_KMS_SIGNER not set, signing will fail")
    return coprocessor_signer, kms_signers


def build_service(config=None, w3=None):
    """Wire together all mock components.

    Args:
        config: dict from load_config(). Loaded from env if None.
        w3: Optional Web3 instance; one is created from ETH_RPC_URL if None.

    Returns:
        dict with keys: app, engine, fulfillment, encryption, store, config, w3
    """
    if config is None:
        config = load_config()
    addresses = contract_addresses(config)
    if w3 is None:
        w3 = setup_web3(config)

    acl = w3.eth.contract(
        address=addresses["ACL_ADDRESS"],
        abi=contract_abi(config, "ACL_ABI_PATH", ACL_ABI),
    )
    gateway = w3.eth.contract(
        address=addresses["GATEWAY_ADDRESS"],
        abi=contract_abi(config, "GATEWAY_ABI_PATH", GATEWAY_ABI),
    )
    coprocessor_signer, kms_signers = setup_signers(config, addresses)

    store = ShadowStore(config["SHADOW_DB_PATH"])
    engine = HandleShadowEngine(
        w3=w3,
        executor_address=addresses["EXECUTOR_ADDRESS"],
        store=store,
        max_retries=config["CLEAR_TEXT_MAX_RETRIES"],
    )
    encryption = EncryptionMockService(
        store=store,
        coprocessor_signer=coprocessor_signer,
        kms_signers=kms_signers,
        acl_address=addresses["ACL_ADDRESS"],
    )
    fulfillment = DecryptionFulfillmentService(
        w3=w3,
        gateway=gateway,
        acl=acl,
        engine=engine,
        kms_signers=kms_signers,
        acl_address=addresses["ACL_ADDRESS"],
        mocked=config["MOCKED"],
        poll_interval=config["POLL_INTERVAL"],
    )

    app = create_app(encryption, engine)

    return {
        "app": app,
        "engine": engine,
        "fulfillment": fulfillment,
        "encryption": encryption,
        "store": store,
        "config": config,
        "w3": w3,
    }


class QuietHandler(WSGIRequestHandler):
    def log_request(self, code="-", size="-"):
        pass  # Suppress per-request logging


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """WSGIServer serving each request in its own thread.

    /get-clear-text may sleep through its retry budget; other requests are
    served meanwhile.
    """

    daemon_threads = True


class ServiceLoop:
    """Main service loop: HTTP server + periodic replay and fulfillment.

    Runs the falcon WSGI app in a background thread while the main thread
    replays executor events and handles decryption requests.
    """

    def __init__(self, service):
        self.service = service
        self.config = service["config"]
        self._stop_event = threading.Event()
        self._http_thread = None
        self._httpd = None

    def start_http_server(self):
        """Bind the WSGI server and serve it from a background thread."""
        self._httpd = make_server(
            "0.0.0.0", self.config["MOCK_PORT"], self.service["app"],
            server_class=ThreadingWSGIServer, handler_class=QuietHandler,
        )
        logger.info("HTTP server listening on port %d", self._httpd.server_port)
        self._http_thread = threading.Thread(
            target=self._httpd.serve_forever, daemon=True
        )
        self._http_thread.start()

    def start(self):
        """Start the service: HTTP server thread + main replay/fulfill loop."""
        self.start_http_server()

        poll_interval = self.config["POLL_INTERVAL"]
        logger.info(
            "Service loop started (poll every %ss, %s mode)",
            poll_interval, "mocked" if self.config["MOCKED"] else "live",
        )

        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=poll_interval)
                if self._stop_event.is_set():
                    break
                self._tick()
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        finally:
            self.stop()

    def _tick(self):
        """One replay + fulfillment cycle."""
        engine = self.service["engine"]
        fulfillment = self.service["fulfillment"]

        try:
            engine.replay_new_events()
        except Exception:
            # Events past the failing one were still applied.
            logger.exception("Error during executor event replay")

        try:
            handled = fulfillment.process_pending_requests()
            if handled:
                logger.info("Handled %d decryption requests", len(handled))
        except Exception:
            logger.exception("Error during decryption fulfillment")

    def stop(self):
        """Signal the service loop and HTTP server to stop."""
        self._stop_event.set()
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None
        thread = self._http_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=HTTP_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("HTTP server thread did not exit")
            self._http_thread = None
        store = self.service.get("store")
        if store is not None:
            store.close()
            self.service["store"] = None


def run_service(config=None):
    """Build and run the mock service (blocking).

    Args:
        config: dict from load_config(). Loaded from env if None.
    """
    service = build_service(config=config)
    loop = ServiceLoop(service)
    loop.start()
