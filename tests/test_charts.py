import pandas as pd

from loadsim.clients import Protocol
from loadsim.engine.charts import render_charts

from .conftest import make_result


def test_charts_are_rendered_from_samples(collector, tmp_path):
    for latency in (10, 20, 30):
        collector.record_call(make_result(tag="challenges", latency_ms=latency))
        collector.record_call(make_result(tag="login_event", protocol=Protocol.GRPC, latency_ms=latency))
    collector.record_session_start({"stage": "api"})
    collector.record_missed_arrival({"stage": "api"})

    paths = render_charts(collector.build_dataframe(), tmp_path)

    assert sorted(path.name for path in paths) == ["arrivals.png", "latency_boxplot.png"]
    assert all(path.stat().st_size > 0 for path in paths)


def test_no_samples_no_charts(tmp_path):
    assert render_charts(pd.DataFrame(columns=["metric", "ts", "value"]), tmp_path) == []
