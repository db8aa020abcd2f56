# services/lootbox-bridge/app/bridge/discovery.py
from __future__ import annotations

import logging
from typing import List

from app.bridge.errors import DiscoveryError, IncompatibleBackendError
from app.bridge.health import HealthProber
from app.bridge.schema_parser import parse_procedures
from app.models.procedure_models import RemoteProcedureDescriptor

logger = logging.getLogger("app.bridge.discovery")


class SchemaExtractor:
    """
    Discovers the lootbox server's procedures from the /types document the health
    check already downloaded. The last successful result is kept in `procedures`
    and replaced wholesale.
    """

    def __init__(self, prober: HealthProber) -> None:
        self.prober = prober
        self._procedures: List[RemoteProcedureDescriptor] = []

    @property
    def procedures(self) -> List[RemoteProcedureDescriptor]:
        return list(self._procedures)

    async def fetch_procedures(self) -> List[RemoteProcedureDescriptor]:
        health, types_text = await self.prober.check_health_and_schema()
        if not health.healthy:
            raise DiscoveryError(health.error or "lootbox server is unreachable")
        if not health.schema_compatible or types_text is None:
            raise IncompatibleBackendError(health.error or "lootbox server schema is incompatible")

        procedures = parse_procedures(types_text)
        if not procedures:
            logger.warning(
                "Lootbox %s parsed to zero procedures; exposing no tools",
                self.prober.types_path,
            )
        else:
            namespaces = sorted({p.namespace for p in procedures})
            logger.info("Discovered %d procedures in %d namespaces: %s", len(procedures), len(namespaces), namespaces)

        self._procedures = procedures
        return list(procedures)
