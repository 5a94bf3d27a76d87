"""
symbolic_swarm/services/dashboard.py

Status publishing and a read-only monitoring dashboard for the search.

The scheduler (and its workers) write snapshots to Redis through
StatusPublisher; the FastAPI app reads them back through DashboardState:
- Search progress (iterations, evaluations, stop reason)
- Current Pareto frontier per output
- Worker status

The dashboard does not control the search.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class DashboardConfig:
    """Configuration for the dashboard service."""

    redis_url: str = "redis://localhost:6379"
    host: str = "0.0.0.0"
    port: int = 8082
    history_limit: int = 1000  # Max status snapshots to keep in history


# Redis key constants
REDIS_KEY_PREFIX = "symbolic_swarm:"
DASHBOARD_STATUS_KEY = f"{REDIS_KEY_PREFIX}dashboard:status"
DASHBOARD_HISTORY_KEY = f"{REDIS_KEY_PREFIX}dashboard:history"
DASHBOARD_FRONTIER_PREFIX = f"{REDIS_KEY_PREFIX}dashboard:frontier:"
WORKER_PREFIX = f"{REDIS_KEY_PREFIX}workers:"


def _connect(redis_url: str) -> Any:
    try:
        import redis
    except ImportError as err:
        raise ImportError(
            "redis package required for status publishing. "
            "Install with: pip install redis"
        ) from err
    client = redis.from_url(redis_url, decode_responses=True)
    client.ping()
    return client


class StatusPublisher:
    """
    Writes search status snapshots to Redis.

    Publishing never interrupts the search: a failed write is logged and
    dropped.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        history_limit: int = 1000,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.history_limit = history_limit
        self._redis = client
        self._disabled = False

    def _get_redis(self) -> Any:
        """Lazy connection to Redis; None once a connection attempt failed."""
        if self._redis is None and not self._disabled:
            try:
                self._redis = _connect(self.redis_url)
                logger.info(f"Status publisher connected to Redis at {self.redis_url}")
            except Exception as e:
                logger.warning(f"Status publishing disabled: {e}")
                self._disabled = True
        return self._redis

    def publish_status(self, status: dict[str, Any]) -> None:
        r = self._get_redis()
        if r is None:
            return
        try:
            status_json = json.dumps(status)
            r.set(DASHBOARD_STATUS_KEY, status_json)
            r.lpush(DASHBOARD_HISTORY_KEY, status_json)
            r.ltrim(DASHBOARD_HISTORY_KEY, 0, self.history_limit - 1)
        except Exception as e:
            logger.warning(f"Failed to publish status: {e}")

    def publish_frontier(self, output: int, entries: list[dict[str, Any]]) -> None:
        r = self._get_redis()
        if r is None:
            return
        try:
            r.set(f"{DASHBOARD_FRONTIER_PREFIX}{output}", json.dumps(entries))
        except Exception as e:
            logger.warning(f"Failed to publish frontier for output {output}: {e}")

    def publish_worker(self, worker_status: dict[str, Any], ttl: int = 60) -> None:
        r = self._get_redis()
        if r is None:
            return
        try:
            key = f"{WORKER_PREFIX}{worker_status['worker_id']}"
            r.set(key, json.dumps(worker_status), ex=ttl)
        except Exception as e:
            logger.warning(f"Failed to publish worker heartbeat: {e}")


class DashboardState:
    """
    Reads dashboard state from Redis.

    Provides methods to read shared state without interfering with the search.
    """

    def __init__(self, redis_url: str, client: Any = None):
        self.redis_url = redis_url
        self._redis = client

    def _get_redis(self) -> Any:
        """Lazy connection to Redis."""
        if self._redis is None:
            try:
                self._redis = _connect(self.redis_url)
                logger.info(f"Dashboard connected to Redis at {self.redis_url}")
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise
        return self._redis

    def get_status(self) -> dict[str, Any]:
        """Get current search status."""
        try:
            r = self._get_redis()
            status_json = r.get(DASHBOARD_STATUS_KEY)
            if status_json:
                return json.loads(status_json)
            return {
                "running": False,
                "iterations": 0,
                "num_evals": 0.0,
                "elapsed_time": 0.0,
            }
        except Exception as e:
            logger.error(f"Failed to get status: {e}")
            return {"error": str(e)}

    def get_history(self, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """Get status history with pagination (newest first)."""
        try:
            r = self._get_redis()
            history_json = r.lrange(DASHBOARD_HISTORY_KEY, offset, offset + limit - 1)
            return [json.loads(h) for h in history_json]
        except Exception as e:
            logger.error(f"Failed to get history: {e}")
            return []

    def get_frontier(self, output: int) -> list[dict[str, Any]]:
        """Get the last published Pareto frontier of one output."""
        try:
            r = self._get_redis()
            frontier_json = r.get(f"{DASHBOARD_FRONTIER_PREFIX}{output}")
            if frontier_json:
                return json.loads(frontier_json)
            return []
        except Exception as e:
            logger.error(f"Failed to get frontier: {e}")
            return []

    def get_workers(self) -> list[dict[str, Any]]:
        """Get worker status list."""
        try:
            r = self._get_redis()
            workers = []

            cursor = 0
            while True:
                cursor, keys = r.scan(cursor, match=f"{WORKER_PREFIX}*")
                for key in keys:
                    worker_json = r.get(key)
                    if worker_json:
                        worker_data = json.loads(worker_json)
                        last_seen = worker_data.get("last_heartbeat", 0)
                        worker_data["seconds_since_heartbeat"] = time.time() - last_seen
                        workers.append(worker_data)
                if cursor == 0:
                    break

            return sorted(workers, key=lambda w: w.get("worker_id", ""))
        except Exception as e:
            logger.error(f"Failed to get workers: {e}")
            return []


def create_app(config: DashboardConfig, state: Optional[DashboardState] = None) -> Any:
    """Create the FastAPI application."""
    from fastapi import FastAPI

    app = FastAPI(
        title="Symbolic-Swarm Dashboard",
        description="Monitoring dashboard for symbolic regression searches",
        version="0.1.0",
    )

    if state is None:
        state = DashboardState(config.redis_url)

    @app.get("/api/status")
    async def get_status() -> dict[str, Any]:
        """Get current search status."""
        return state.get_status()

    @app.get("/api/history")
    async def get_history(limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        """Get status history with pagination."""
        return state.get_history(limit=limit, offset=offset)

    @app.get("/api/frontier/{output}")
    async def get_frontier(output: int) -> list[dict[str, Any]]:
        """Get the Pareto frontier of one output."""
        return state.get_frontier(output)

    @app.get("/api/workers")
    async def get_workers() -> list[dict[str, Any]]:
        """Get worker status list."""
        return state.get_workers()

    return app


def run_dashboard(config: DashboardConfig | None = None) -> None:
    """
    Run the dashboard as a standalone service.
    """
    import argparse

    parser = argparse.ArgumentParser(description="Symbolic-Swarm Dashboard")
    parser.add_argument("--redis-url", default="redis://localhost:6379")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8082)

    args = parser.parse_args()

    if config is None:
        config = DashboardConfig(
            redis_url=args.redis_url,
            host=args.host,
            port=args.port,
        )

    app = create_app(config)

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_dashboard()
