"""
Pytest fixtures: a Flask app on a throwaway SQLite file, a controllable clock,
and a requests-style transport that routes SignedClient calls into the Flask test client.
"""

from urllib.parse import urlsplit

import pytest

from auth import now_ms
from db import db_session, Voter, LegacyPart, LegacyPart2025, PartMap
from main import create_app
from settings import SigningConfig
from signed_client import SignedClient

SECRET = "0123456789abcdef0123456789abcdef"
API_KEY = "key1"
BASE_URL = "http://localhost"


class FakeClock:
    def __init__(self, start: int | None = None):
        self.now = now_ms() if start is None else start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class _Response:
    """Just enough of requests.Response for SignedClient and the assertions."""

    def __init__(self, resp):
        self._resp = resp
        self.status_code = resp.status_code
        self.ok = resp.status_code < 400
        self.headers = resp.headers

    def json(self):
        return self._resp.get_json()


class FlaskTransport:
    def __init__(self, test_client):
        self.client = test_client
        self.calls = []

    def request(self, method, url, headers=None, data=None, json=None, params=None, timeout=None):
        parts = urlsplit(url)
        self.calls.append((method, parts.path))
        kwargs = {"method": method, "headers": dict(headers or {}), "query_string": params or parts.query}
        if json is not None:
            kwargs["json"] = json
        elif data is not None:
            kwargs["data"] = data
        return _Response(self.client.open(parts.path, **kwargs))


@pytest.fixture
def config():
    return SigningConfig(secret=SECRET, api_key=API_KEY)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(config, clock, tmp_path):
    app = create_app(config, database_url=f"sqlite:///{tmp_path / 'roll.db'}", clock=clock)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def transport(client):
    return FlaskTransport(client)


@pytest.fixture
def signed(transport, clock):
    return SignedClient(BASE_URL, API_KEY, session=transport, clock=clock)


@pytest.fixture
def roll(app):
    with db_session() as s:
        s.add_all([
            Voter(ac_no=210, part_no=1, sl_no_in_part=2, house_no="12", fm_name_v2="முருகன்",
                  fm_name_en="Murugan", rln_fm_nm_v2="கந்தசாமி", rln_fm_nm_en="Kandasamy",
                  rln_type="F", age=45, sex="M", id_card_no="TN0000001"),
            Voter(ac_no=210, part_no=1, sl_no_in_part=1, house_no="12", fm_name_v2="லட்சுமி",
                  fm_name_en="Lakshmi", rln_fm_nm_v2="முருகன்", rln_fm_nm_en="Murugan",
                  rln_type="H", age=40, sex="F", id_card_no="TN0000002"),
            Voter(ac_no=210, part_no=2, sl_no_in_part=1, house_no="7A", fm_name_v2="செல்வி",
                  fm_name_en="Selvi_100%", rln_fm_nm_v2="ராஜா", rln_fm_nm_en="Raja",
                  rln_type="F", age=22, sex="F", id_card_no="TN0000003"),
            Voter(ac_no=211, part_no=1, sl_no_in_part=1, house_no="3", fm_name_v2="ராமன்",
                  fm_name_en="Raman", rln_fm_nm_v2="சுப்பையா", rln_fm_nm_en="Subbiah",
                  rln_type="F", age=60, sex="M", id_card_no="TN0000004"),
        ])
        s.add_all([
            LegacyPart(state_code="S22", district_no=28, ac_no=210, part_no=2, part_name_en="Govt School East"),
            LegacyPart(state_code="S22", district_no=28, ac_no=210, part_no=1, part_name_en="Panchayat Office"),
            LegacyPart(state_code="S22", district_no=28, ac_no=211, part_no=1, part_name_en="Temple Hall"),
        ])
        s.add_all([
            LegacyPart2025(ac_no=213, part_no=5, part_name_v1="Union School"),
            LegacyPart2025(ac_no=213, part_no=6, part_name_v1="Library"),
            LegacyPart2025(ac_no=214, part_no=1, part_name_v1="Market Hall"),
        ])
        s.add_all([
            PartMap(ac_no_2002=210, part_no_2002=1, ac_no_2025=213, part_no_2025=6),
            PartMap(ac_no_2002=210, part_no_2002=2, ac_no_2025=213, part_no_2025=5),
        ])
