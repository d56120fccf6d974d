"""
ストリームトークンのインメモリ保管

発行済みトークンのレコードをnonceをキーに保持し、
期限切れレコードを定期スイープで回収する。

主要機能:
1. スレッドセーフな put / get / delete
2. 期限切れレコードのスイープ（同時実行は1つまで）
3. APSchedulerによる固定間隔スイープのスケジューリング
"""

import logging
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 300
SWEEP_JOB_ID = "stream_token_sweep"


class TokenRecord(NamedTuple):
    """発行済みトークン1件分のサーバー側レコード（不変）"""

    nonce: str
    resource_id: str
    issued_at: int  # epoch ミリ秒
    expires_at: int  # epoch ミリ秒


def now_ms(clock: Callable[[], float]) -> int:
    """clock（epoch秒）をミリ秒整数に変換"""
    return int(clock() * 1000)


class StreamTokenStore:
    """nonce -> TokenRecord のスレッドセーフなレジストリ"""

    def __init__(self, clock: Callable[[], float] = time.time):
        """
        Args:
            clock: 現在時刻（epoch秒）を返す関数。テストでは仮想時計を注入する
        """
        self.clock = clock
        self._records: Dict[str, TokenRecord] = {}
        self._lock = threading.Lock()
        self._sweep_lock = threading.Lock()

    def put(self, record: TokenRecord) -> bool:
        """
        レコードを登録する

        Returns:
            bool: 登録できた場合True。同じnonceの生存レコードがある場合False
        """
        with self._lock:
            if record.nonce in self._records:
                return False
            self._records[record.nonce] = record
            return True

    def get(self, nonce: str) -> Optional[TokenRecord]:
        with self._lock:
            return self._records.get(nonce)

    def delete(self, nonce: str) -> bool:
        """
        レコードを削除する

        Returns:
            bool: この呼び出しで実際に削除した場合True
        """
        with self._lock:
            return self._records.pop(nonce, None) is not None

    def sweep(self) -> int:
        """
        expires_at < now のレコードをすべて削除する

        別のスイープが実行中の場合は何もせず0を返す。

        Returns:
            int: 削除したレコード数
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("Token sweep already in progress, skipping")
            return 0

        try:
            current = now_ms(self.clock)
            with self._lock:
                expired = [
                    nonce
                    for nonce, record in self._records.items()
                    if _expires_at(record) < current
                ]
                for nonce in expired:
                    del self._records[nonce]
                remaining = len(self._records)

            if expired:
                logger.info(
                    f"Swept {len(expired)} expired stream tokens "
                    f"({remaining} live tokens remaining)"
                )
            return len(expired)
        finally:
            self._sweep_lock.release()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, nonce) -> bool:
        with self._lock:
            return nonce in self._records


def _expires_at(record) -> int:
    """壊れたレコードは期限切れ扱いにしてスイープ対象とする"""
    try:
        return int(record.expires_at)
    except (AttributeError, TypeError, ValueError):
        return -1


class TokenSweeper:
    """StreamTokenStore.sweep を固定間隔で実行するスケジューラ連携"""

    def __init__(self, store: StreamTokenStore, scheduler,
                 interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS):
        """
        Args:
            store: スイープ対象のストア
            scheduler: APSchedulerのスケジューラ（BackgroundScheduler等）
            interval_seconds: スイープ間隔（秒）
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.store = store
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds

    def schedule(self):
        """スイープジョブを登録する（max_instances=1で多重実行を防止）"""
        return self.scheduler.add_job(
            func=self.store.sweep,
            trigger="interval",
            seconds=self.interval_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self):
        self.schedule()
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            f"Stream token sweep scheduled every {self.interval_seconds} seconds"
        )

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Stream token sweep stopped")
