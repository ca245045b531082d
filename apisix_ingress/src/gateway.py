from __future__ import annotations

from apisix_ingress.src.controller import ResourceController
from apisix_ingress.src.events import Event, EventDelete
from apisix_ingress.src.informer import Obj
from apisix_ingress.src.translation import spec


class GatewayController(ResourceController):
    """Acknowledges Gateway API ``Gateway`` objects.

    Listeners are not programmed into the data plane; the controller only
    reports that it accepted the object.
    """

    kind = "Gateway"

    def reconcile(self, event: Event, obj: Obj) -> None:
        if isinstance(event, EventDelete):
            self.logger.info("Gateway %s deleted", event.key)
            return
        listeners = spec(obj).get("listeners") or []
        self.logger.info("Gateway %s accepted with %d listener(s)", event.key, len(listeners))
