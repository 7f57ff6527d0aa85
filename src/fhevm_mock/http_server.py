# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.http_server module

HTTP endpoints used by dApp frontends and test scripts.

Uses falcon (WSGI). Clients POST JSON to /encrypt to obtain input handles
and a proof, and to /get-clear-text to read back the shadow value of a
handle. Every error is answered with {"status": "error", "message": ...} so
browser clients never see an HTML error page.
"""

import logging

import falcon

from fhevm_mock.errors import (
    FhevmMockError,
    NotFoundError,
    SigningConfigurationError,
    ValidationError,
)
from fhevm_mock.fhe_types import handle_to_int

logger = logging.getLogger(__name__)


def _error(resp, status, message):
    resp.status = status
    resp.media = {"status": "error", "message": message}


def _read_json(req):
    """Return the JSON body as a dict, or raise ValidationError."""
    try:
        body = req.get_media()
    except falcon.HTTPError as exc:
        raise ValidationError(f"Malformed JSON body: {exc.title}") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


class EncryptResource:
    """Falcon resource for POST /encrypt."""

    def __init__(self, encryption_service):
        self.encryption_service = encryption_service

    def on_post(self, req, resp):
        try:
            body = _read_json(req)
            handles, input_proof = self.encryption_service.encrypt(
                body.get("values"),
                body.get("bits"),
                body.get("userAddress"),
                body.get("contractAddress"),
            )
        except ValidationError as exc:
            _error(resp, falcon.HTTP_400, str(exc))
            return
        except SigningConfigurationError as exc:
            logger.error("Encryption failed: %s", exc)
            _error(resp, falcon.HTTP_500, str(exc))
            return
        except Exception as exc:
            logger.exception("Encryption failed")
            _error(resp, falcon.HTTP_500, f"Encryption failed: {exc}")
            return

        resp.status = falcon.HTTP_200
        resp.media = {
            "status": "success",
            "handles": handles,
            "inputProof": input_proof,
        }


class ClearTextResource:
    """Falcon resource for POST /get-clear-text.

    Replays any executor events not yet seen before reading, so a value
    produced by the transaction the client just sent is found.
    """

    def __init__(self, engine):
        self.engine = engine

    def on_post(self, req, resp):
        try:
            body = _read_json(req)
            if "handle" not in body:
                raise ValidationError("Missing handle")
            handle = handle_to_int(body["handle"])
            self._refresh()
            clear_text = self.engine.get_clear_text(handle)
        except ValidationError as exc:
            _error(resp, falcon.HTTP_400, str(exc))
            return
        except NotFoundError as exc:
            _error(resp, falcon.HTTP_404, str(exc))
            return
        except Exception as exc:
            logger.exception("Clear text lookup failed")
            _error(resp, falcon.HTTP_500, f"Clear text lookup failed: {exc}")
            return

        resp.status = falcon.HTTP_200
        resp.media = {"status": "success", "result": str(clear_text)}

    def _refresh(self):
        try:
            self.engine.replay_new_events()
        except FhevmMockError:
            # The rest of the batch was applied; the read can still succeed.
            logger.exception("Executor replay failed before clear text lookup")


class HealthResource:
    """Simple health check endpoint at GET /health."""

    def on_get(self, req, resp):
        resp.status = falcon.HTTP_200
        resp.media = {"status": "ok"}


def create_app(encryption_service, engine):
    """Create the falcon WSGI application.

    Args:
        encryption_service: EncryptionMockService behind /encrypt.
        engine: HandleShadowEngine behind /get-clear-text.

    Returns:
        A falcon.App instance.
    """
    app = falcon.App(cors_enable=True)
    app.add_route("/encrypt", EncryptResource(encryption_service))
    app.add_route("/get-clear-text", ClearTextResource(engine))
    app.add_route("/health", HealthResource())
    return app
