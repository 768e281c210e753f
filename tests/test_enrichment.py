import pandas as pd
import pytest
import requests

from sncompare.de import DEComparison
from sncompare.enrichment import EnrichmentRecord, EnrichrClient, enrich_de_results
from sncompare.protocols import EnrichmentService


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


ROW = [1, "T cell activation", 1e-5, -2.0, 25.0, ["Cd3e", "Cd28"], 1e-3, 0, 0]


def _client(replies, **kwargs):
    sleeps = []
    session = FakeSession(replies)
    client = EnrichrClient(
        base_url="https://enrichr.test/Enrichr", session=session,
        sleep=sleeps.append, **kwargs,
    )
    return client, session, sleeps


def test_enrich_uploads_then_queries_each_library():
    client, session, _ = _client([
        FakeResponse({"userListId": 42}),
        FakeResponse({"GO_BP": [ROW]}),
        FakeResponse({"KEGG": []}),
    ])

    out = client.enrich(["Cd3e", "Cd28", "Cd3e"], ["GO_BP", "KEGG"])

    assert isinstance(client, EnrichmentService)
    assert out["KEGG"] == []
    rec = out["GO_BP"][0]
    assert rec == EnrichmentRecord(
        library="GO_BP", rank=1, term="T cell activation", pvalue=1e-5,
        adjusted_pvalue=1e-3, zscore=-2.0, combined_score=25.0,
        overlapping_genes=("Cd3e", "Cd28"),
    )
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://enrichr.test/Enrichr/addList")
    assert kwargs["files"]["list"][1] == "Cd3e\nCd28"
    assert session.calls[1][2]["params"] == {"userListId": 42, "backgroundType": "GO_BP"}


def test_empty_gene_list_makes_no_request():
    client, session, _ = _client([])
    assert client.enrich([], ["GO_BP"]) == {"GO_BP": []}
    assert session.calls == []


def test_transient_failure_is_retried_with_backoff():
    client, session, sleeps = _client(
        [requests.ConnectionError("reset"), FakeResponse({}, 503), FakeResponse({"userListId": 7})],
        max_retries=3, backoff_base=2,
    )

    assert client.add_list(["Cd3e"]) == 7
    assert len(session.calls) == 3
    assert sleeps == [1, 2]


def test_persistent_failure_raises_last_error():
    client, _, sleeps = _client(
        [FakeResponse({}, 500), FakeResponse({}, 500)], max_retries=2,
    )
    with pytest.raises(requests.HTTPError):
        client.add_list(["Cd3e"])
    assert len(sleeps) == 1


class RecordingService:
    def __init__(self):
        self.genes = None

    def enrich(self, genes, libraries):
        self.genes = list(genes)
        return {lib: [] for lib in libraries}


def _comparison():
    table = pd.DataFrame({
        "gene": ["Up1", "Down1", "Flat"],
        "log2fc": [2.0, -2.0, 0.1],
        "pvalue": [1e-6, 1e-6, 0.8],
        "padj": [1e-5, 1e-5, 1.0],
        "significant": [True, True, False],
        "upregulated": [True, False, False],
    })
    return DEComparison("TG", "WT", table, {"test": "wilcoxon"})


@pytest.mark.parametrize(
    "direction, expected",
    [("up", ["Up1"]), ("down", ["Down1"]), ("both", ["Up1", "Down1"])],
)
def test_enrich_de_results_direction(direction, expected):
    service = RecordingService()
    out = enrich_de_results(_comparison(), service, libraries=["L"], direction=direction)
    assert service.genes == expected
    assert out == {"L": []}


def test_enrich_de_results_rejects_unknown_direction():
    with pytest.raises(ValueError):
        enrich_de_results(_comparison(), RecordingService(), direction="sideways")
