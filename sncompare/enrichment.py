"""
enrichment.py — Enrichr client for gene-set enrichment of DE results.

The enrichment service is an opaque remote lookup: a gene list goes in,
ranked term records come back per library.  :class:`EnrichrClient`
implements :class:`~sncompare.protocols.EnrichmentService` against the
public Enrichr REST API; any other object with the same ``enrich``
method can be used instead.

Enrichr workflow
----------------
1. ``POST /addList``  (multipart: ``list``, ``description``) → ``userListId``
2. ``GET  /enrich?userListId=…&backgroundType=<library>`` per library

Usage:
    from sncompare.enrichment import EnrichrClient, enrich_de_results

    client = EnrichrClient()
    records = enrich_de_results(comparison, client, direction="up")
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import requests

from sncompare.config import ENRICHMENT_CONFIG
from sncompare.protocols import EnrichmentService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrichmentRecord:
    """One enriched term of one library."""

    library: str
    rank: int
    term: str
    pvalue: float
    adjusted_pvalue: float
    zscore: float
    combined_score: float
    overlapping_genes: tuple[str, ...]

    @property
    def score(self) -> float:
        return self.combined_score

    @classmethod
    def from_enrichr_row(cls, library: str, row: list) -> EnrichmentRecord:
        """Parse ``[rank, term, p, z, combined, genes, adj_p, ...]``."""
        return cls(
            library=library,
            rank=int(row[0]),
            term=str(row[1]),
            pvalue=float(row[2]),
            zscore=float(row[3]),
            combined_score=float(row[4]),
            overlapping_genes=tuple(row[5]),
            adjusted_pvalue=float(row[6]),
        )


class EnrichrClient:
    """
    Minimal Enrichr API client with exponential-backoff retry.

    Parameters
    ----------
    base_url : str
        API root, e.g. ``https://maayanlab.cloud/Enrichr``.
    session : requests.Session, optional
        Injected for connection reuse (and for tests).
    """

    def __init__(
        self,
        base_url: str = ENRICHMENT_CONFIG["base_url"],
        session: requests.Session | None = None,
        timeout: float = ENRICHMENT_CONFIG["request_timeout"],
        max_retries: int = ENRICHMENT_CONFIG["max_retries"],
        backoff_base: float = ENRICHMENT_CONFIG["backoff_base"],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = backoff_base
        self._sleep = sleep

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """HTTP request with exponential-backoff retry; re-raises the last error."""
        kwargs.setdefault("timeout", self.timeout)
        url = f"{self.base_url}/{path.lstrip('/')}"
        last_exc: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                resp = self.session.request(method, url, **kwargs)
                resp.raise_for_status()
                return resp
            except requests.RequestException as exc:
                last_exc = exc
                logger.warning(
                    "Enrichr %s %s failed (attempt %d/%d): %s",
                    method, path, attempt + 1, self.max_retries, exc,
                )
                if attempt < self.max_retries - 1:
                    self._sleep(self.backoff_base ** attempt)

        raise last_exc  # type: ignore[misc]

    def add_list(self, genes: Sequence[str], description: str = "sncompare") -> int:
        """Upload a gene list; return its ``userListId``."""
        payload = {
            "list": (None, "\n".join(genes)),
            "description": (None, description),
        }
        resp = self._request_with_retry("POST", "addList", files=payload)
        return int(resp.json()["userListId"])

    def enrich_list(self, user_list_id: int, library: str) -> list[EnrichmentRecord]:
        resp = self._request_with_retry(
            "GET", "enrich",
            params={"userListId": user_list_id, "backgroundType": library},
        )
        rows = resp.json().get(library, [])
        return [EnrichmentRecord.from_enrichr_row(library, row) for row in rows]

    def enrich(
        self, genes: Sequence[str], libraries: Sequence[str],
    ) -> dict[str, list[EnrichmentRecord]]:
        """Enrich *genes* against every library; records sorted by rank."""
        genes = [g for g in dict.fromkeys(str(g) for g in genes) if g]
        if not genes:
            return {lib: [] for lib in libraries}
        list_id = self.add_list(genes)
        out = {}
        for lib in libraries:
            out[lib] = sorted(self.enrich_list(list_id, lib), key=lambda r: r.rank)
        logger.info(
            "Enrichr: %d genes against %d libraries.", len(genes), len(libraries),
        )
        return out


def enrich_de_results(
    result,
    service: EnrichmentService,
    libraries: Sequence[str] | None = None,
    direction: str = "up",
) -> dict[str, list[EnrichmentRecord]]:
    """
    Send the up-, down- or all significant genes of a DE comparison to
    *service*.

    *result* is a :class:`~sncompare.de.DEComparison`.
    """
    if direction == "up":
        genes = result.up_genes()
    elif direction == "down":
        genes = result.down_genes()
    elif direction == "both":
        genes = result.up_genes() + result.down_genes()
    else:
        raise ValueError(f"direction must be 'up', 'down' or 'both', got '{direction}'.")
    libraries = list(libraries or ENRICHMENT_CONFIG["libraries"])
    logger.info(
        "Enriching %d %s-regulated genes of %s.", len(genes), direction, result.name,
    )
    return service.enrich(genes, libraries)
