"""Live kline ingestion for Binance USD-M perpetual futures.

``KlineStreamManager`` owns the websocket subscriptions that keep the
:class:`kline_store.KlineStore` current.  Every ``(symbol, timeframe)`` pair
gets one socket, one FIFO queue and one listener thread, so updates for a
pair are applied strictly in arrival order while different pairs progress
independently.

Startup backfills the last 100 candles of every pair through the REST API
with a small worker pool, then subscribes.  Pairs requested later that are
not in the store are fetched synchronously, cached and subscribed on demand.
"""

from __future__ import annotations

import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Mapping, Optional

from binance import ThreadedWebsocketManager
from binance.client import Client

from config import StreamSettings, load_stream_settings
from kline_store import Candle, KlineStore, Window, WindowKey, validate_timeframe
from log_utils import setup_logger
from observability import log_event
from rest_prices import discover_perpetual_symbols, rest_backfill_klines

logger = setup_logger(__name__)

_STOP = object()


class KlineUnavailableError(RuntimeError):
    """Raised when a window is neither cached nor retrievable from REST."""


def stream_key(symbol: str, timeframe: str) -> str:
    """Return the Binance stream name for a kline pair."""

    return f"{str(symbol).strip().lower()}@kline_{validate_timeframe(timeframe)}"


def _float(payload: Mapping[str, Any], key: str) -> float:
    try:
        return float(payload.get(key, 0.0))
    except (TypeError, ValueError):
        return 0.0


def _is_closed_update(msg: Any) -> bool:
    if isinstance(msg, Mapping) and isinstance(msg.get("data"), Mapping):
        msg = msg["data"]
    body = msg.get("k") if isinstance(msg, Mapping) else None
    return bool(isinstance(body, Mapping) and body.get("x"))


def decode_kline_message(msg: Any) -> Optional[Candle]:
    """Decode a kline websocket payload into a :class:`Candle`.

    Accepts plain ``kline``/``continuous_kline`` events as well as combined
    stream envelopes (``{"stream": ..., "data": {...}}``).  Returns ``None``
    for anything that does not carry a kline body.
    """

    if not isinstance(msg, Mapping):
        return None
    if "data" in msg and isinstance(msg.get("data"), Mapping):
        msg = msg["data"]
    body = msg.get("k")
    if not isinstance(body, Mapping):
        return None
    try:
        open_time = int(body["t"])
        close_time = int(body.get("T", 0))
    except (KeyError, TypeError, ValueError):
        return None
    try:
        trades = int(body.get("n", 0))
    except (TypeError, ValueError):
        trades = 0
    return Candle(
        open_time=open_time,
        close_time=close_time,
        open=_float(body, "o"),
        high=_float(body, "h"),
        low=_float(body, "l"),
        close=_float(body, "c"),
        volume=_float(body, "v"),
        trades=trades,
        quote_volume=_float(body, "q"),
        taker_buy_base=_float(body, "V"),
        taker_buy_quote=_float(body, "Q"),
    )


class KlineStreamManager:
    """Keep rolling kline windows current for many symbols and timeframes."""

    def __init__(
        self,
        store: Optional[KlineStore] = None,
        *,
        client: Optional[Client] = None,
        socket_manager: Optional[ThreadedWebsocketManager] = None,
        settings: Optional[StreamSettings] = None,
    ) -> None:
        self.settings = settings or load_stream_settings()
        self.store = store if store is not None else KlineStore()
        self._client = client
        self._twm = socket_manager
        self._twm_started = socket_manager is not None
        self._manager_lock = threading.Lock()
        self._subscription_lock = threading.Lock()
        self._subscriptions: Dict[WindowKey, Any] = {}
        self._queues: Dict[WindowKey, "queue.Queue[Any]"] = {}
        self._listeners: Dict[WindowKey, threading.Thread] = {}
        self._fetch_locks: Dict[WindowKey, threading.Lock] = {}
        self._fetch_registry_lock = threading.Lock()
        self._stopped = False

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    @property
    def rest_client(self) -> Client:
        with self._manager_lock:
            if self._client is None:
                api_key = os.getenv("BINANCE_API_KEY")
                api_secret = os.getenv("BINANCE_API_SECRET")
                self._client = Client(api_key, api_secret) if api_key and api_secret else Client()
            return self._client

    def _ensure_manager(self) -> ThreadedWebsocketManager:
        with self._manager_lock:
            if self._twm is None:
                api_key = os.getenv("BINANCE_API_KEY")
                api_secret = os.getenv("BINANCE_API_SECRET")
                self._twm = ThreadedWebsocketManager(api_key=api_key, api_secret=api_secret)
            if not self._twm_started:
                self._twm.start()
                self._twm_started = True
            return self._twm

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def resolve_symbols(self, symbols: Optional[Iterable[str]] = None) -> List[str]:
        """Return the explicit, configured or discovered symbol universe."""

        chosen = list(symbols) if symbols is not None else list(self.settings.symbols)
        if not chosen:
            chosen = discover_perpetual_symbols(self.rest_client)
            logger.info("Discovered %d tradable perpetual symbols", len(chosen))
        seen: Dict[str, None] = {}
        for symbol in chosen:
            name = str(symbol or "").strip().upper()
            if name:
                seen.setdefault(name, None)
        return list(seen)

    def _backfill_symbol(self, symbol: str) -> int:
        loaded = 0
        for timeframe in self.settings.timeframes:
            try:
                candles = rest_backfill_klines(
                    self.rest_client, symbol, timeframe, limit=self.settings.backfill_limit
                )
            except Exception as exc:
                logger.warning("Backfill of %s %s failed: %s", symbol, timeframe, exc)
                continue
            if not candles:
                logger.warning("Backfill of %s %s returned no candles", symbol, timeframe)
                continue
            self.store.replace(symbol, timeframe, candles)
            loaded += 1
        return loaded

    def backfill(self, symbols: Iterable[str]) -> Dict[str, int]:
        """Populate the store for ``symbols`` using a bounded worker pool.

        Returns the number of timeframes loaded per symbol.  Failures are
        logged and skipped so one bad symbol never aborts the batch.
        """

        symbols = [str(s).strip().upper() for s in symbols if str(s).strip()]
        results: Dict[str, int] = {}
        if not symbols:
            return results
        workers = max(1, min(self.settings.backfill_concurrency, len(symbols)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kline-backfill") as pool:
            futures = {pool.submit(self._backfill_symbol, symbol): symbol for symbol in symbols}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    results[symbol] = future.result()
                except Exception:
                    logger.exception("Backfill worker for %s crashed", symbol)
                    results[symbol] = 0
        expected = len(self.settings.timeframes)
        log_event(
            logger,
            "kline_backfill_complete",
            symbols=len(symbols),
            complete=sum(1 for count in results.values() if count == expected),
            partial=sorted(s for s, count in results.items() if 0 < count < expected),
            failed=sorted(s for s, count in results.items() if count == 0),
        )
        return results

    def initialize(self, symbols: Optional[Iterable[str]] = None) -> List[str]:
        """Backfill and subscribe every configured ``(symbol, timeframe)`` pair."""

        universe = self.resolve_symbols(symbols)
        self.backfill(universe)
        self.start(universe)
        return universe

    def start(self, symbols: Iterable[str]) -> int:
        """Open live subscriptions for ``symbols`` on every timeframe."""

        opened = 0
        for symbol in symbols:
            for timeframe in self.settings.timeframes:
                if self.subscribe(symbol, timeframe):
                    opened += 1
        logger.info("Opened %d kline subscriptions", opened)
        return opened

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def is_subscribed(self, symbol: str, timeframe: str) -> bool:
        key = (str(symbol).strip().upper(), validate_timeframe(timeframe))
        with self._subscription_lock:
            return key in self._subscriptions

    def subscriptions(self) -> List[WindowKey]:
        with self._subscription_lock:
            return sorted(self._subscriptions)

    def subscribe(self, symbol: str, timeframe: str) -> bool:
        """Open a live kline subscription; ``False`` when one already exists."""

        key = (str(symbol).strip().upper(), validate_timeframe(timeframe))
        with self._subscription_lock:
            if self._stopped or key in self._subscriptions:
                return False
            self._queues[key] = queue.Queue(maxsize=self.settings.listener_queue_size)
            try:
                twm = self._ensure_manager()
                stream = twm.start_kline_futures_socket(
                    callback=lambda msg, _key=key: self.handle_message(_key[0], _key[1], msg),
                    symbol=key[0],
                    interval=key[1],
                )
            except Exception as exc:  # pragma: no cover - network dependent
                logger.warning("Failed to subscribe to %s: %s", stream_key(*key), exc)
                self._queues.pop(key, None)
                return False
            self._subscriptions[key] = stream
            listener = threading.Thread(
                target=self._listen,
                args=(key, self._queues[key]),
                name=f"kline-{stream_key(*key)}",
                daemon=True,
            )
            self._listeners[key] = listener
            listener.start()
        log_event(logger, "kline_subscription_added", stream=stream_key(*key))
        return True

    def handle_message(self, symbol: str, timeframe: str, msg: Any) -> None:
        """Websocket callback: enqueue ``msg`` for the pair's listener."""

        key = (str(symbol).strip().upper(), timeframe)
        if isinstance(msg, Mapping) and msg.get("e") == "error":
            logger.warning("Stream %s reported error: %s", stream_key(*key), msg.get("m") or msg)
            return
        pending = self._queues.get(key)
        if pending is None:
            logger.debug("Dropping message for unsubscribed stream %s", stream_key(*key))
            return
        # A full queue applies backpressure to the socket thread; queued ticks
        # are never discarded because one of them may be a bar's closing update.
        try:
            pending.put(msg, timeout=self.settings.listener_put_timeout)
        except queue.Full:
            log_event(
                logger,
                "kline_queue_drop",
                stream=stream_key(*key),
                max_size=self.settings.listener_queue_size,
                closed=_is_closed_update(msg),
            )

    def _listen(self, key: WindowKey, pending: "queue.Queue[Any]") -> None:
        symbol, timeframe = key
        while True:
            msg = pending.get()
            if msg is _STOP:
                return
            candle = decode_kline_message(msg)
            if candle is None:
                logger.debug("Ignoring undecodable message on %s", stream_key(symbol, timeframe))
                continue
            try:
                self.store.upsert(symbol, timeframe, candle)
            except Exception:
                logger.exception("Failed to apply update for %s", stream_key(symbol, timeframe))

    # ------------------------------------------------------------------
    # Consumer access
    # ------------------------------------------------------------------
    def _fetch_lock(self, key: WindowKey) -> threading.Lock:
        with self._fetch_registry_lock:
            return self._fetch_locks.setdefault(key, threading.Lock())

    def get_klines(self, symbol: str, timeframe: str) -> Window:
        """Return the window for a pair, fetching and subscribing on a miss."""

        key = (str(symbol).strip().upper(), validate_timeframe(timeframe))
        window = self.store.get(*key)
        if window is not None:
            return window
        with self._fetch_lock(key):
            window = self.store.get(*key)
            if window is not None:
                return window
            try:
                candles = rest_backfill_klines(
                    self.rest_client, key[0], key[1], limit=self.settings.backfill_limit
                )
            except Exception as exc:
                raise KlineUnavailableError(
                    f"Unable to fetch {key[1]} klines for {key[0]}: {exc}"
                ) from exc
            if not candles:
                raise KlineUnavailableError(f"No {key[1]} klines returned for {key[0]}")
            self.store.replace(key[0], key[1], candles)
            self.subscribe(*key)
            window = self.store.get(*key)
        if window is None:
            raise KlineUnavailableError(f"{key[1]} klines for {key[0]} were not cached")
        return window

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    def stop(self) -> None:
        """Close all sockets and let every listener drain its queue."""

        with self._subscription_lock:
            self._stopped = True
            streams = dict(self._subscriptions)
            self._subscriptions.clear()
            queues = dict(self._queues)
            listeners = dict(self._listeners)
            self._listeners.clear()
        if self._twm is not None:
            for key, stream in streams.items():
                try:
                    self._twm.stop_socket(stream)
                except Exception as exc:  # pragma: no cover - best effort
                    logger.debug("Failed to stop socket %s: %s", stream_key(*key), exc)
        timeout = self.settings.listener_join_timeout
        for key, pending in queues.items():
            try:
                pending.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.warning("Listener queue for %s did not drain", stream_key(*key))
        for key, listener in listeners.items():
            listener.join(timeout)
            if listener.is_alive():
                logger.warning("Listener for %s did not exit in %.1fs", stream_key(*key), timeout)
        with self._subscription_lock:
            for key in queues:
                self._queues.pop(key, None)
        if self._twm is not None and self._twm_started:
            try:
                self._twm.stop()
            except Exception as exc:  # pragma: no cover - best effort
                logger.debug("Failed to stop websocket manager: %s", exc)
            self._twm_started = False
        log_event(logger, "kline_streams_stopped", streams=len(streams))


__all__ = [
    "KlineStreamManager",
    "KlineUnavailableError",
    "decode_kline_message",
    "stream_key",
]
