import json
import logging

from flask import Blueprint, jsonify, request

from .errors import DecodeError
from .helpers import make_admission_response
from .models import AdmissionReviewModel

log = logging.getLogger("k8s-metadata-injector")


def create_routes(settings, mutator):
    bp = Blueprint("webhook", __name__)

    @bp.route("/health", methods=["GET"])
    def health():
        return {"status": "healthy"}, 200

    def mutate():
        log.debug("Serving admission request")
        try:
            body = request.get_data()
            if not body:
                log.error("empty request body")
                return "empty request body", 400

            if request.mimetype != "application/json":
                log.error("Content-Type=%s, expect application/json", request.content_type)
                return "invalid Content-Type, expect `application/json`", 415

            try:
                admission = AdmissionReviewModel.from_dict(json.loads(body))
            except (ValueError, DecodeError) as e:
                log.error("Can't decode body: %s", e)
                return jsonify(make_admission_response(uid="", allowed=False, message=str(e)))

            return jsonify(mutator.mutate(admission.request))
        except Exception as e:
            log.error("Error in /mutate: %s", e, exc_info=True)
            return jsonify(make_admission_response(uid="", allowed=True)), 500

    for path in dict.fromkeys(("/mutate", settings.webhook_path)):
        bp.add_url_rule(path, "mutate", mutate, methods=["POST"])

    return bp
