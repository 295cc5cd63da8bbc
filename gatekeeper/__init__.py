from gatekeeper.config import GatewayConfig
from gatekeeper.gatekeeper import create_app

__all__ = ["GatewayConfig", "create_app"]
