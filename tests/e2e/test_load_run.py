import asyncio
import socket

import pytest
import pytest_asyncio

from load_config import LoadTestConfig
from load_runner import LoadRunner
from tests.e2e.mock_server import TOKEN_PREFIX, create_mock_server, shutdown_mock_server


API_TABLE = {
    "login": {
        "url": "/api/login",
        "method": "POST",
        "body": {"type": "wallet", "wallet_addr": "{{walletAddr}}", "signature": "{{signature}}"},
        "response": {"token": "token"},
    },
    "getUserInfo": {
        "url": "/api/user/info",
        "method": "GET",
        "headers": {"Authorization": "{{token}}"},
        "queryParams": {"addr": "{{walletAddr}}"},
        "response": {"inviteCode": {"path": "data.invite_info.invite_code"}},
    },
    "claim": {
        "url": "/api/claim",
        "method": "POST",
        "body": {"invite_code": "{{inviteCode}}"},
    },
    "broken": {"url": "/api/broken", "method": "GET"},
}


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, hits, requests = await create_mock_server()
    yield {'base_url': base_url, 'hits': hits, 'requests': requests}
    await shutdown_mock_server(runner)


def make_config(base_url, workflow, **overrides) -> LoadTestConfig:
    data = {
        "baseURL": base_url,
        "concurrency": 2,
        "totalRequests": 4,
        "workflow": workflow,
        "apis": API_TABLE,
        "requestTimeout": 5,
    }
    data.update(overrides)
    return LoadTestConfig.model_validate(data)


def _records(n):
    return [{"walletAddr": f"0x{i:04x}", "signature": f"0xsig{i}"} for i in range(n)]


@pytest.mark.asyncio
async def test_workflow_threads_token_between_steps(mock_server):
    cfg = make_config(mock_server['base_url'], ["login", "getUserInfo", "claim"], testData=_records(4))

    stats = await asyncio.wait_for(LoadRunner(cfg).run(), timeout=20)

    assert stats.total_requests == 12
    assert stats.failed_requests == 0
    assert stats.status_codes == {200: 12}
    assert mock_server['hits'] == {'/api/login': 4, '/api/user/info': 4, '/api/claim': 4}

    info_requests = [r for r in mock_server['requests'] if r['path'] == '/api/user/info']
    wallets = sorted(r['query']['addr'] for r in info_requests)
    assert wallets == sorted(rec["walletAddr"] for rec in _records(4))
    for req in info_requests:
        assert req['headers']['Authorization'] == TOKEN_PREFIX + req['query']['addr']

    claim_bodies = sorted(r['body'] for r in mock_server['requests'] if r['path'] == '/api/claim')
    assert claim_bodies == sorted(f'{{"invite_code": "INV-{rec["walletAddr"]}"}}' for rec in _records(4))


@pytest.mark.asyncio
async def test_exhausted_records_end_the_run(mock_server):
    cfg = make_config(mock_server['base_url'], ["login"], totalRequests=20, testData=_records(3))

    stats = await asyncio.wait_for(LoadRunner(cfg).run(), timeout=20)

    assert stats.total_requests == 3
    assert mock_server['hits'] == {'/api/login': 3}


@pytest.mark.asyncio
async def test_unparseable_response_aborts_iteration(mock_server):
    cfg = make_config(mock_server['base_url'], ["broken", "login"], totalRequests=3)

    stats = await asyncio.wait_for(LoadRunner(cfg).run(), timeout=20)

    assert stats.total_requests == 3
    assert stats.failed_requests == 3
    assert stats.error_types == {"parse_error": 3}
    assert '/api/login' not in mock_server['hits']


@pytest.mark.asyncio
async def test_missing_token_is_sent_as_literal_placeholder(mock_server):
    apis = dict(API_TABLE)
    apis["login"] = {**API_TABLE["login"], "response": {"token": "no_such_field"}}
    cfg = make_config(mock_server['base_url'], ["login", "getUserInfo"], totalRequests=1, apis=apis)

    stats = await asyncio.wait_for(LoadRunner(cfg).run(), timeout=20)

    # 401 is still a transport success
    assert stats.failed_requests == 0
    assert stats.status_codes == {200: 1, 401: 1}
    info = [r for r in mock_server['requests'] if r['path'] == '/api/user/info'][0]
    assert info['headers']['Authorization'] == "{{token}}"
    assert info['query']['addr'] == "{{walletAddr}}"


@pytest.mark.asyncio
async def test_duration_mode_against_live_server(mock_server):
    cfg = make_config(mock_server['base_url'], ["login"], totalRequests=0, duration=0.5, concurrency=4)

    stats = await asyncio.wait_for(LoadRunner(cfg).run(), timeout=20)

    assert stats.total_requests > 0
    assert stats.total_requests == stats.success_requests + stats.failed_requests
    assert stats.min_duration <= stats.avg_duration <= stats.max_duration
    assert stats.requests_per_sec > 0


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.mark.asyncio
async def test_connection_refused_is_recorded_once_per_iteration():
    cfg = make_config(f"http://127.0.0.1:{_closed_port()}", ["login", "getUserInfo"], totalRequests=3)

    stats = await asyncio.wait_for(LoadRunner(cfg).run(), timeout=20)

    assert stats.total_requests == 3
    assert stats.failed_requests == 3
    assert stats.error_types == {"connection_error": 3}
    assert stats.percentiles == {}
