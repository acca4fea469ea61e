"""
Application routes package
"""

from .api import api_blueprint
from .metrics import metrics_blueprint


def init_routes(app):
    """Register all application blueprints"""
    if api_blueprint.name not in app.blueprints:
        app.register_blueprint(api_blueprint)
    if app.config.get("MONITORING_ENABLED", False) and metrics_blueprint.name not in app.blueprints:
        app.register_blueprint(metrics_blueprint)
