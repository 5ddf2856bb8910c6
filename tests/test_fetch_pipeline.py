import json
import os
import re
import time

import pytest
import requests

import cu_task_viewer as cut
from conftest import FakeResponse


def _task_json(task_id: str, status: str = "open", orderindex: int = 0) -> dict:
    return {
        "id": task_id,
        "name": f"Task {task_id}",
        "custom_id": f"CU-{task_id}",
        "url": f"https://app.clickup.com/t/{task_id}",
        "status": {"status": status, "color": "#87909e", "orderindex": orderindex},
        "assignees": [{"id": 81, "username": "ana", "initials": "AN"}],
        "list": {"id": "L1", "name": "Backlog"},
        "tags": [{"name": "timesheet", "tag_bg": "#fff", "tag_fg": "#000"}],
    }


def _page_of(url: str) -> int:
    return int(re.search(r"[?&]page=(\d+)", url).group(1))


def _paged_handler(pages: dict, delays: dict = None):
    """Serve ``pages[n] = (task_ids, last_page)``; missing pages are empty."""
    def handler(method, url, body):
        n = _page_of(url)
        if delays and n in delays:
            time.sleep(delays[n])
        ids, last = pages.get(n, ([], False))
        return FakeResponse(200, {"tasks": [_task_json(i) for i in ids], "last_page": last})
    return handler


def test_fresh_read_issues_one_batch_and_writes_cache(client, fake_http, cache_path, clock):
    fake_http.handler = _paged_handler({0: (["a", "b"], True)})

    tasks = client.get_view_tasks("V1")

    assert [t.id for t in tasks] == ["a", "b"]
    urls = fake_http.urls("GET")
    assert sorted(_page_of(u) for u in urls) == [0, 1, 2]
    assert all(u.startswith("https://api.clickup.com/api/v2/view/V1/task?page=") for u in urls)

    with open(cache_path, 'r', encoding='utf-8') as f:
        raw = json.load(f)
    assert [t["id"] for t in raw["view_tasks"]] == ["a", "b"]
    assert raw["view_id"] == "V1"
    assert raw["expired_at"] == int(clock()) + 3600


def test_cache_hit_issues_no_requests(client, fake_http):
    fake_http.handler = _paged_handler({0: (["a", "b"], True)})
    first = client.get_view_tasks("V1")
    fake_http.calls.clear()

    second = client.get_view_tasks("V1")

    assert fake_http.calls == []
    assert [t.id for t in second] == [t.id for t in first]


def test_cache_survives_a_new_client(client, fake_http, cache_path, clock):
    fake_http.handler = _paged_handler({0: (["a"], True)})
    client.get_view_tasks("V1")
    fake_http.calls.clear()

    other = cut.ClickUpClient("pk_test", "T1", cache=cut.TaskCache.load(cache_path, clock=clock))
    assert [t.id for t in other.get_view_tasks("V1")] == ["a"]
    assert fake_http.calls == []


def test_expiry_clears_every_collection_before_fetching(client, fake_http, clock):
    fake_http.handler = _paged_handler({0: (["a", "b"], True)})
    client.get_view_tasks("V1")
    client.cache.comments_by_task_id["a"] = []
    clock.advance(3601)

    seen = {}

    def task_handler(method, url, body):
        seen["view_tasks"] = client.cache.view_tasks
        seen["comments"] = dict(client.cache.comments_by_task_id)
        return FakeResponse(200, _task_json("T9"))

    fake_http.handler = task_handler
    task = client.get_task("T9")

    assert task.id == "T9"
    assert seen == {"view_tasks": None, "comments": {}}
    assert fake_http.urls()[-1] == "https://api.clickup.com/api/v2/task/T9?include_markdown_description=true"
    assert client.cache.view_tasks is None
    assert client.cache.timesheet_tasks is None
    assert client.cache.time_entries is None
    assert list(client.cache.task_by_id) == ["T9"]
    assert not client.cache.is_expired()


def test_pages_are_returned_in_order_regardless_of_arrival(client, fake_http):
    pages = {0: (["A", "B"], False), 1: (["C"], False), 2: (["D", "E"], True)}
    # page 0 arrives last, page 2 first
    fake_http.handler = _paged_handler(pages, delays={0: 0.15, 1: 0.05})

    tasks = client.get_timesheet_tasks("tags[]=timesheet")

    assert [t.id for t in tasks] == ["A", "B", "C", "D", "E"]
    urls = fake_http.urls()
    assert all(u.startswith("https://api.clickup.com/api/v2/team/T1/task?tags[]=timesheet&page=") for u in urls)


def test_last_page_in_a_later_batch_discards_pages_after_it(client, fake_http):
    pages = {
        0: (["p0"], False), 1: (["p1"], False), 2: (["p2"], False),
        3: (["p3"], False), 4: (["p4"], True), 5: (["p5"], False),
    }
    fake_http.handler = _paged_handler(pages)

    tasks = client.get_timesheet_tasks("tags[]=timesheet")

    assert [t.id for t in tasks] == ["p0", "p1", "p2", "p3", "p4"]
    assert sorted(_page_of(u) for u in fake_http.urls()) == [0, 1, 2, 3, 4, 5]


def test_empty_page_before_last_page_does_not_end_pagination(client, fake_http):
    fake_http.handler = _paged_handler({0: (["A"], False), 1: ([], False), 2: (["B"], True)})

    tasks = client.get_view_tasks("V1")

    assert [t.id for t in tasks] == ["A", "B"]
    assert len(fake_http.calls) == 3


def test_all_empty_batch_ends_pagination_without_last_page_flag(client, fake_http):
    fake_http.handler = _paged_handler({0: (["a"], False), 1: (["b"], False)})

    tasks = client.get_view_tasks("V1")

    assert [t.id for t in tasks] == ["a", "b"]
    assert sorted(_page_of(u) for u in fake_http.urls()) == [0, 1, 2, 3, 4, 5]


def test_batch_failure_aborts_and_leaves_cache_untouched(client, fake_http, cache_path):
    ok = _paged_handler({0: (["a"], False), 2: (["c"], True)})

    def handler(method, url, body):
        if _page_of(url) == 1:
            return FakeResponse(500, {"err": "boom"}, reason="Internal Server Error")
        return ok(method, url, body)

    fake_http.handler = handler

    with pytest.raises(cut.ProtocolError) as excinfo:
        client.get_view_tasks("V1")

    assert excinfo.value.status_code == 500
    assert excinfo.value.operation == "get tasks"
    assert "failed to get tasks: 500" in str(excinfo.value)
    assert client.cache.view_tasks is None
    assert not os.path.exists(cache_path)


def test_every_request_carries_the_token(client, fake_http):
    fake_http.handler = _paged_handler({0: (["a"], True)})
    client.get_view_tasks("V1")
    assert fake_http.tokens and set(fake_http.tokens) == {"pk_test"}
    assert fake_http.timeouts == [None, None, None]


def test_session_sets_auth_and_content_type():
    s = cut._session("pk_secret")
    assert s.headers["Authorization"] == "pk_secret"
    assert s.headers["Content-Type"] == "application/json"


def test_non_2xx_names_operation_and_status(client, fake_http):
    fake_http.handler = lambda m, u, b: FakeResponse(404, {}, reason="Not Found")
    with pytest.raises(cut.ProtocolError) as excinfo:
        client.get_task("missing")
    assert str(excinfo.value) == "failed to get task: 404 Not Found"
    assert "missing" not in client.cache.task_by_id


def test_transport_error_becomes_network_error(client, fake_http):
    def handler(method, url, body):
        raise requests.ConnectionError("connection refused")

    fake_http.handler = handler
    with pytest.raises(cut.NetworkError):
        client.get_timesheet_entries("U")
    assert client.cache.time_entries is None


def test_malformed_json_becomes_decode_error(client, fake_http):
    fake_http.handler = lambda m, u, b: FakeResponse(200, ValueError("Expecting value"))
    with pytest.raises(cut.DecodeError):
        client.get_task_comments("T1")


def test_task_detail_and_comments_are_cached_per_id(client, fake_http):
    def handler(method, url, body):
        if url.endswith("/comment"):
            return FakeResponse(200, {"comments": [{
                "id": "c1",
                "comment": [{"text": "looks good", "attributes": {}}],
                "comment_text": "looks good",
                "user": {"id": 81, "username": "ana", "initials": "AN"},
                "date": "1717000000000",
                "reply_count": "2",
            }]})
        payload = _task_json("T1")
        payload["markdown_description"] = "# Title"
        return FakeResponse(200, payload)

    fake_http.handler = handler
    task = client.get_task("T1")
    comments = client.get_task_comments("T1")
    client.get_task("T1")
    client.get_task_comments("T1")

    assert task.description == "# Title"
    assert task.assignees[0].id == "81"
    assert comments[0].user.id == "81"
    assert comments[0].reply_count == 2
    assert len(fake_http.calls) == 2


def test_time_entries_decode_loose_task_refs(client, fake_http):
    fake_http.handler = lambda m, u, b: FakeResponse(200, {"data": [
        {"id": "e1", "task": {"id": "T1", "name": "x"}, "duration": "3600000", "start": "1717394400000"},
        {"id": "e2", "task": "not-an-object", "duration": "60000", "start": "1717394400000"},
        {"id": "e3", "task": None, "duration": "60000", "start": "1717394400000"},
    ]})

    entries = client.get_timesheet_entries("U")

    assert fake_http.urls() == ["https://api.clickup.com/api/v2/team/T1/time_entries?assignee=U"]
    assert [e.task_id for e in entries] == ["T1", None, None]
    assert entries[0].hours == 1.0


@pytest.mark.parametrize("raw, expected", [
    (12345678, "12345678"),
    (12345678.0, "12345678"),
    ("987", "987"),
    (True, None),
    (None, None),
    ([1], None),
])
def test_normalize_user_id(raw, expected):
    assert cut.normalize_user_id(raw) == expected


def test_current_user_and_teams_use_override_token(client, fake_http):
    def handler(method, url, body):
        if url.endswith("/api/v2/user"):
            return FakeResponse(200, {"user": {"id": 4.2e7, "username": "ana"}})
        return FakeResponse(200, {"teams": [{"id": "9001", "name": "Acme"}, {"id": "9002", "name": "Side"}]})

    fake_http.handler = handler
    fake_http.tokens.clear()

    assert client.current_user("pk_other").id == "42000000"
    assert [t.name for t in client.teams("pk_other")] == ["Acme", "Side"]
    assert fake_http.tokens == ["pk_other", "pk_other"]


def test_discover_settings_picks_first_team(client, fake_http):
    def handler(method, url, body):
        if url.endswith("/api/v2/user"):
            return FakeResponse(200, {"user": {"id": 81}})
        return FakeResponse(200, {"teams": [{"id": "9001", "name": "Acme"}, {"id": "9002", "name": "Side"}]})

    fake_http.handler = handler
    cfg = cut.discover_settings(client, "pk_new", view_id="V7", initial_view="timesheet")

    assert cfg.clickup_token == "pk_new"
    assert cfg.team_id == "9001"
    assert cfg.user_id == "81"
    assert cfg.view_id == "V7"
    assert cfg.initial_view == "timesheet"


def test_discover_settings_without_teams_fails(client, fake_http):
    fake_http.handler = lambda m, u, b: FakeResponse(200, {"teams": []})
    with pytest.raises(cut.NotFoundError):
        cut.discover_settings(client, "pk_new")


def test_discover_settings_keeps_explicit_team(client, fake_http):
    fake_http.handler = lambda m, u, b: FakeResponse(200, {"user": {"id": "81"}})
    cfg = cut.discover_settings(client, "pk_new", team_id="555")
    assert cfg.team_id == "555"
    assert fake_http.urls() == ["https://api.clickup.com/api/v2/user"]
