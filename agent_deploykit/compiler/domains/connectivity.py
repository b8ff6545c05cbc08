"""Plans network links from the agent's network to the networks it collects from."""
import logging
from typing import Dict, List, Tuple

from .models import LinkResult, Network, NetworkLink, Route

logger = logging.getLogger(__name__)


class ConnectivityPlanner:
    """
    Decides when a cross-network link is needed and remembers the ones created.

    Links are keyed by target network id only, so two call sites using
    different link ids for the same target still share one link. Not safe for
    concurrent use.
    """

    def __init__(self, source: Network):
        self.source = source
        self._links: Dict[str, NetworkLink] = {}
        self._routes: List[Route] = []

    @property
    def links(self) -> Tuple[NetworkLink, ...]:
        return tuple(self._links.values())

    @property
    def routes(self) -> Tuple[Route, ...]:
        return tuple(self._routes)

    def is_linked(self, target: Network) -> bool:
        return target.id in self._links

    def ensure_link(self, target: Network, link_id: str) -> LinkResult:
        """
        Make sure traffic from every subnet of the source network can reach target.

        Args:
            target: Network to reach
            link_id: Name stem for the created link and routes, unique per call site

        Returns:
            ALREADY_LOCAL if target is the source network, ALREADY_LINKED if a
            link to target exists, CREATED otherwise
        """
        if target.id == self.source.id:
            return LinkResult.ALREADY_LOCAL
        if target.id in self._links:
            logger.debug(f"Network {target.id} already linked, skipping {link_id}")
            return LinkResult.ALREADY_LINKED

        link = NetworkLink(source_id=self.source.id, target_id=target.id, link_id=link_id)
        self._links[target.id] = link

        for kind, subnets in (("public", self.source.public_subnets), ("private", self.source.private_subnets)):
            for i, subnet in enumerate(subnets):
                self._routes.append(Route(
                    route_id=f"{link_id}-route-{kind}-{i}",
                    route_table_id=subnet.route_table_id,
                    destination_cidr=target.cidr,
                    link_id=link_id,
                ))

        logger.info(f"Linking network {self.source.id} -> {target.id} ({target.cidr}) as {link_id}")
        return LinkResult.CREATED
