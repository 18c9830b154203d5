import logging

from flask import Blueprint, jsonify, request

from paygate.engine import get_engine

logger = logging.getLogger(__name__)

bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@bp.route("/<provider>", methods=["POST"])
def receive(provider):
    """
    Provider callback endpoint.

    200 for everything the engine acknowledges (including duplicates and
    unknown transactions); signature and payload errors become 400 through
    the error handlers.
    """
    engine = get_engine()
    adapter = engine.adapter_for(provider)
    header_name = adapter.signature_header if adapter else None

    outcome = engine.ingestor.handle_webhook(
        provider,
        request.get_data(),
        request.headers.get(header_name) if header_name else None,
        source_ip=request.remote_addr,
    )
    return jsonify({"received": True, **outcome.to_dict()}), 200
