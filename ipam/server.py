"""IPAM HTTP endpoint (Flask).

Narrow call boundary for runtimes that do not embed the handler in-process.
"""

import logging
import os

from flask import Flask, jsonify, request

from .errors import BadRequest, IpamError, to_wire
from .handler import RequestHandler
from .models import OwnerKey

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "NotFound": 404,
    "PoolExhausted": 409,
    "OwnerMismatch": 403,
    "LeaseMismatch": 409,
    "StoreUnavailable": 503,
    "BadRequest": 400,
}


def _error(e: IpamError):
    body = to_wire(e)
    return jsonify(body), STATUS_CODES.get(body["errorKind"], 500)


def create_app(handler: RequestHandler) -> Flask:
    app = Flask(__name__)
    app.config["IPAM_HANDLER"] = handler

    @app.route("/cni", methods=["POST"])
    def cni():
        """Run one ADD / DEL / CHECK request."""
        payload = request.get_json(silent=True)
        response = handler.handle(payload)
        if "errorKind" in response:
            return jsonify(response), STATUS_CODES.get(response["errorKind"], 500)
        return jsonify(response), 200

    @app.route("/pools/<name>", methods=["GET"])
    def pool_info(name):
        try:
            pool = handler.allocator.store.load_pool(name)
            data = pool.to_dict()
            data["usage"] = handler.allocator.usage(name)
            data["leases"] = sorted(
                (l.to_dict() for l in handler.allocator.store.get_leases(name)),
                key=lambda l: l["sequence"],
            )
            return jsonify(data), 200
        except IpamError as e:
            return _error(e)

    @app.route("/pools/<name>/sweep", methods=["POST"])
    def sweep(name):
        """Release leases whose owner is not in ``liveOwners``."""
        payload = request.get_json(silent=True) or {}
        try:
            live = payload.get("liveOwners")
            if not isinstance(live, list):
                raise BadRequest("liveOwners must be a list")
            try:
                alive = {OwnerKey.from_dict(o) for o in live}
            except (ValueError, AttributeError) as e:
                raise BadRequest(f"Invalid owner in liveOwners: {e}") from e
            handler.allocator.store.load_pool(name)
            released = handler.ledger.sweep(name, lambda owner: owner in alive)
            return jsonify({"released": released}), 200
        except IpamError as e:
            return _error(e)

    return app


if __name__ == "__main__":
    from .config import build_handler

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [ipam] %(levelname)s: %(message)s")
    port = int(os.getenv("PORT", 8790))
    app = create_app(build_handler())
    logger.info(f"Serving IPAM on 127.0.0.1:{port}")
    app.run(host="127.0.0.1", port=port, debug=False)
