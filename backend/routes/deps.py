"""Process-wide gateway and notifier, built lazily on first use."""
import threading
from typing import Optional

from backend.config import GatewaySettings
from backend.services.gateway import Gateway, build_gateway
from backend.services.notifier import Notifier, NullNotifier, WhatsAppNotifier

_lock = threading.Lock()
_gateway: Optional[Gateway] = None
_notifier: Optional[Notifier] = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                gw = build_gateway(GatewaySettings.from_env())
                gw.start()
                _gateway = gw
    return _gateway


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        with _lock:
            if _notifier is None:
                settings = GatewaySettings.from_env()
                if settings.whatsapp_enabled:
                    _notifier = WhatsAppNotifier(settings.whatsapp_token, settings.whatsapp_phone_number_id)
                else:
                    _notifier = NullNotifier()
    return _notifier


def shutdown() -> None:
    global _gateway, _notifier
    with _lock:
        if _gateway is not None:
            _gateway.close()
            _gateway = None
        close = getattr(_notifier, "close", None)
        if callable(close):
            close()
        _notifier = None
