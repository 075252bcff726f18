"""HTTP surface for the calendar engine (push-notification receiver)."""

from studycal.api.app import create_app, create_app_from_config

__all__ = ["create_app", "create_app_from_config"]
