#!/usr/bin/env python3
"""Read-only MongoDB Atlas Admin API client used to locate a destination cluster.

The migration never provisions anything in Atlas.  When the operator names a
cluster instead of pasting a connection string, this module looks the cluster
up, confirms it is ready to accept writes, and hands back the SRV hostname so
``migrate_to_atlas.py`` can build the destination URI.

    AtlasAPI        -- Project-scoped client using HTTP Digest Auth with a
                       programmatic API key (public + private key pair).

Usage
-----
::

    from atlas_api import AtlasAPI

    api = AtlasAPI(public_key, private_key, group_id)
    cluster = api.get_cluster("Cluster0")
    host = AtlasAPI.srv_host(cluster)

Environment Variables
---------------------
This module does not load .env itself -- callers are responsible for
calling ``load_dotenv()`` before constructing API instances.

Required for AtlasAPI:
    atlas_public_key, atlas_private_key, atlas_group_id
"""

import requests
from requests.auth import HTTPDigestAuth

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Cluster state reported by Atlas once provisioning / scaling has finished.
READY_STATE = "IDLE"


class AtlasLookupError(Exception):
    """Raised when the Atlas API cannot produce a usable destination cluster."""


# ============================================================================
# AtlasAPI -- Project-scoped, HTTP Digest Auth
# ============================================================================

class AtlasAPI:
    """Project-scoped Atlas API client using HTTP Digest authentication.

    All request paths are prefixed with ``/groups/{group_id}``.

    Attributes:
        BASE: Atlas Admin API v2 base URL.
        JSON_ACCEPT: Versioned JSON Accept header.
        group_id: The Atlas project (group) ID this client is scoped to.

    Example::

        api = AtlasAPI(public_key, private_key, group_id)
        for cluster in api.list_clusters():
            print(cluster["name"], cluster["stateName"])
    """

    BASE = "https://cloud.mongodb.com/api/atlas/v2"
    JSON_ACCEPT = "application/vnd.atlas.2023-02-01+json"

    def __init__(self, public_key: str, private_key: str, group_id: str):
        """Initialize with Atlas programmatic API key credentials.

        Args:
            public_key: Atlas API public key.
            private_key: Atlas API private key.
            group_id: Atlas project (group) ID.
        """
        self._session = requests.Session()
        self._session.auth = HTTPDigestAuth(public_key, private_key)
        self.group_id = group_id

    def _url(self, path: str) -> str:
        return f"{self.BASE}/groups/{self.group_id}{path}"

    def get(self, path: str, **kwargs):
        """GET a project-scoped endpoint.

        Args:
            path: Path appended after /groups/{group_id}.
            **kwargs: Passed through to requests (e.g., timeout=30).

        Returns:
            requests.Response object.
        """
        headers = {"Accept": self.JSON_ACCEPT}
        kwargs.setdefault("timeout", 30)
        return self._session.get(self._url(path), headers=headers, **kwargs)

    # -- High-level helpers ------------------------------------------------

    def list_clusters(self) -> list[dict]:
        """List all clusters in the current project."""
        resp = self.get("/clusters")
        resp.raise_for_status()
        return resp.json().get("results", [])

    def get_cluster(self, name: str) -> dict:
        """Get a single cluster by name.

        Args:
            name: Cluster name.

        Returns:
            Cluster document dict.

        Raises:
            AtlasLookupError: If the cluster does not exist in the project.
            requests.HTTPError: For any other non-2xx response.
        """
        resp = self.get(f"/clusters/{name}")
        if resp.status_code == 404:
            available = [c["name"] for c in self.list_clusters()]
            raise AtlasLookupError(
                f"Cluster '{name}' not found in project {self.group_id}. "
                f"Available: {available}"
            )
        resp.raise_for_status()
        return resp.json()

    def get_database_user(self, username: str) -> dict | None:
        """Return the database user document, or None if it does not exist."""
        resp = self.get(f"/databaseUsers/admin/{username}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    @staticmethod
    def srv_host(cluster_info: dict) -> str:
        """Extract the SRV hostname from an Atlas cluster info document.

        Returns:
            Hostname string, or empty string if no SRV connection string.
        """
        srv = cluster_info.get("connectionStrings", {}).get("standardSrv", "")
        return srv.replace("mongodb+srv://", "")

    def ready_cluster_host(self, name: str) -> str:
        """Look up *name* and return its SRV host once the cluster is IDLE.

        Raises:
            AtlasLookupError: Cluster missing, not IDLE, or without an SRV
                connection string.
        """
        cluster = self.get_cluster(name)
        state = cluster.get("stateName", "UNKNOWN")
        if state != READY_STATE:
            raise AtlasLookupError(
                f"Cluster '{name}' is {state}, expected {READY_STATE}"
            )
        host = self.srv_host(cluster)
        if not host:
            raise AtlasLookupError(f"No SRV connection string for '{name}'")
        return host
