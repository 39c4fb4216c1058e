import json

from newsflow.models.fetch import StrategyName
from newsflow.services.sources import SourceConfigReader, SourceFetchConfig, parse_source_config


class FakeSnapshot:
    def __init__(self, data):
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return self._data


class FakeDocument:
    def __init__(self, data, counter):
        self._data = data
        self._counter = counter

    def get(self):
        self._counter.append(1)
        return FakeSnapshot(self._data)


class FakeCollection:
    def __init__(self, docs, counter):
        self._docs = docs
        self._counter = counter

    def document(self, doc_id):
        return FakeDocument(self._docs.get(doc_id), self._counter)


class FakeDB:
    def __init__(self, docs):
        self.reads = []
        self._docs = docs

    def collection(self, name):
        assert name == "sources"
        return FakeCollection(self._docs, self.reads)


def test_parse_source_config_reads_strategy_aliases_and_timeouts():
    assert parse_source_config({"fetch": {"strategy": "browserless", "timeout": 20}}) == (
        SourceFetchConfig(StrategyName.RENDER, 20.0)
    )
    assert parse_source_config(json.dumps({"fetch": {"strategy": "go"}})).strategy == (
        StrategyName.SCRAPE
    )
    assert parse_source_config({"fetch": {"strategy": "fetch", "timeout": 15000}}) == (
        SourceFetchConfig(StrategyName.LOCAL, 15.0)
    )
    assert parse_source_config({"fetch": {"strategy": "auto"}}) == SourceFetchConfig()
    assert parse_source_config("not json") == SourceFetchConfig()


def test_reader_caches_lookups():
    db = FakeDB({"src-1": {"config": {"fetch": {"strategy": "grpc"}}}})
    reader = SourceConfigReader(db)

    first = reader.get("src-1")
    second = reader.get("src-1")

    assert first.strategy == StrategyName.SCRAPE
    assert second is first
    assert len(db.reads) == 1


def test_unknown_source_uses_automatic_mode():
    reader = SourceConfigReader(FakeDB({}))

    assert reader.get("missing") == SourceFetchConfig()
    assert reader.get(None) == SourceFetchConfig()
