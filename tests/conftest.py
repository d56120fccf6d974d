"""
テスト用共通設定

仮想時計とフェイクスケジューラを注入し、実時間の待機なしで
有効期限切れ・スイープを検証できるようにする。
"""

import os
import sys

import pytest

# プロジェクトルートをPythonパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from security.stream_token import StreamTokenIssuer, StreamTokenVerifier  # noqa: E402
from security.token_store import StreamTokenStore  # noqa: E402

TEST_SECRET = "test-stream-token-secret"

PUBLIC_CLIENT_IP = "8.8.8.8"
PUBLIC_BASE_URL = "http://music.example.com"

DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
MOBILE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class VirtualClock:
    """epoch秒を返す仮想時計"""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeScheduler:
    """APSchedulerの add_job / start / shutdown だけを模したスケジューラ"""

    def __init__(self):
        self.jobs = {}
        self.running = False

    def add_job(self, func, trigger, id, replace_existing=False, **kwargs):
        self.jobs[id] = {"func": func, "trigger": trigger, **kwargs}
        return self.jobs[id]

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False

    def run_job(self, job_id):
        return self.jobs[job_id]["func"]()


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def store(clock):
    return StreamTokenStore(clock=clock)


@pytest.fixture
def issuer(store):
    return StreamTokenIssuer(store, TEST_SECRET)


@pytest.fixture
def verifier(store):
    return StreamTokenVerifier(store, TEST_SECRET)


@pytest.fixture
def music_dir(tmp_path):
    directory = tmp_path / "music"
    directory.mkdir()
    (directory / "song.mp3").write_bytes(b"ID3" + b"\x00" * 20000)
    (directory / "intro.ogg").write_bytes(b"OggS" + b"\x01" * 100)
    (directory / "hidden.wav").write_bytes(b"RIFF" + b"\x02" * 100)
    (directory / "notes.txt").write_text("not audio")
    return directory


def make_app(tmp_path, music_dir, clock, scheduler, **overrides):
    """テスト用設定でFlaskアプリケーションを生成（overridesで設定を上書き）"""
    from app import create_app

    data_dir = tmp_path / "data"
    data_dir.mkdir(exist_ok=True)
    (data_dir / "settings.json").write_text(
        '{"siteTitle": "Test Player", "hiddenFiles": ["hidden.wav"]}', encoding="utf-8"
    )

    config = {
        "TESTING": True,
        "STREAM_TOKEN_SECRET": TEST_SECRET,
        "STREAM_TOKEN_TTL_SECONDS": 600,
        "TOKEN_SWEEP_INTERVAL_SECONDS": 300,
        "TOKEN_SWEEP_ENABLED": True,
        "RATE_LIMIT_ENABLED": True,
        "RATE_LIMIT_MAX_REQUESTS": 100,
        "RATE_LIMIT_WINDOW_SECONDS": 900,
        "ALLOWED_REFERRER_DOMAINS": ["partner.example.org", "10.20.0.0/16"],
        "TRUST_PROXY_HEADERS": False,
        "MUSIC_DIR": str(music_dir),
        "DATA_DIR": str(data_dir),
        "LOG_DIR": str(tmp_path / "logs"),
        "TOKEN_CLOCK": clock,
        "TOKEN_SCHEDULER": scheduler,
    }
    config.update(overrides)
    return create_app(config)


@pytest.fixture
def app(tmp_path, music_dir, clock, fake_scheduler):
    """テスト用Flaskアプリケーション"""
    return make_app(tmp_path, music_dir, clock, fake_scheduler)


@pytest.fixture
def client(app):
    """テスト用HTTPクライアント"""
    return app.test_client()


def public_get(client, path, headers=None, remote_addr=PUBLIC_CLIENT_IP):
    """公開ネットワーク上のクライアントとしてGETする"""
    return client.get(
        path,
        base_url=PUBLIC_BASE_URL,
        headers=headers or {},
        environ_base={"REMOTE_ADDR": remote_addr},
    )
