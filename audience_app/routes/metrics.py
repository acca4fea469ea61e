"""
Prometheus scrape endpoint, mounted only when ``MONITORING_ENABLED`` is set.
"""

from flask import Blueprint, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

metrics_blueprint = Blueprint("metrics", __name__)


@metrics_blueprint.get("/metrics")
def prometheus_metrics():
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
