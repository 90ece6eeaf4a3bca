"""
kucoin_client.py -- KuCoin spot REST API wrapper using only the standard library.

Handles:
  - Request signing (HMAC-SHA256, API key version 2)
  - Retry of idempotent calls on connection/timeout errors
  - Rate-limit awareness (token bucket + circuit breaker)
  - Envelope validation and normalization of KuCoin's response shapes

KUCOIN API SIGNING (how it works):
  1. Passphrase credential (once per key):
       base64(HMAC-SHA256(secret, passphrase))
  2. Per request, prehash = timestamp_ms + METHOD + path_with_query + body
  3. Signature = base64(HMAC-SHA256(secret, prehash))
  4. Send KC-API-KEY, KC-API-SIGN, KC-API-TIMESTAMP, KC-API-PASSPHRASE and
     KC-API-KEY-VERSION=2 on every call

Every retry attempt builds a new request: the timestamp moves, so the
signature must be recomputed.  Order placement (POST) is never retried
here -- the caller re-issues it with the same clientOid instead.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import socket
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Literal

import config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# KuCoin API paths
# ---------------------------------------------------------------------------
TICKER_PATH = "/api/v1/market/orderbook/level1"
SYMBOLS_PATH = "/api/v2/symbols"
CANDLES_PATH = "/api/v1/market/candles"
ORDERS_PATH = "/api/v1/orders"

SUCCESS_CODE = "200000"

# KuCoin candle row: [time, open, close, high, low, volume, turnover]
CANDLE_CLOSE_INDEX = 2

CANDLE_SECONDS = {
    "1min": 60, "3min": 180, "5min": 300, "15min": 900, "30min": 1800,
    "1hour": 3600, "2hour": 7200, "4hour": 14400, "6hour": 21600,
    "8hour": 28800, "12hour": 43200, "1day": 86400, "1week": 604800,
}

Side = Literal["buy", "sell"]
OrderStatus = Literal["active", "done", "cancelled", "failed", "unknown"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class KucoinError(Exception):
    """Base class for everything the gateway raises."""


class TransportError(KucoinError):
    """Connection/timeout failures that outlived the retry policy."""

    def __init__(self, operation: str, attempts: int, cause: Exception | None = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempt(s): {cause}")


class ApiError(KucoinError):
    """KuCoin answered with a non-success code.  Never retried."""

    def __init__(self, code: str, message: str, operation: str = ""):
        self.code = code
        self.message = message
        self.operation = operation
        super().__init__(f"KuCoin API error {code} on {operation}: {message}")


class SymbolNotFoundError(KucoinError):
    pass


class ResponseError(KucoinError):
    """The response was not JSON or lacked a field we need."""


class OrderLifecycleError(KucoinError):
    """An order we were waiting on was cancelled or failed instead of filling."""

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"order {order_id} ended as {status} before filling")


class _TransientFailure(Exception):
    """Internal marker: this attempt may be retried."""


# ---------------------------------------------------------------------------
# Typed results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TickerSnapshot:
    bid: Decimal
    ask: Decimal

    @property
    def mid(self) -> Decimal:
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class InstrumentSpec:
    tick_size: Decimal
    lot_precision: int
    min_size: Decimal


@dataclass(frozen=True)
class OpenOrder:
    order_id: str
    price: Decimal
    side: Side


@dataclass(frozen=True)
class OrderRecord:
    order_id: str
    side: str
    price: Decimal
    requested_size: Decimal
    deal_size: Decimal
    status: OrderStatus


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry for transport failures.

    attempts:  total tries, including the first one
    delay:     seconds before the second try
    backoff:   delay multiplier per further try (1.0 = fixed delay)
    max_delay: cap on any single pause
    """
    attempts: int = 3
    delay: float = 2.0
    backoff: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Pause after the given (1-based) failed attempt."""
        return min(self.max_delay, self.delay * (self.backoff ** (attempt - 1)))

    def run(self, operation: str, fn: Callable[[], Any],
            sleep: Callable[[float], Any] = time.sleep) -> Any:
        last_exc: Exception | None = None
        for attempt in range(1, max(1, self.attempts) + 1):
            try:
                return fn()
            except _TransientFailure as e:
                last_exc = e.__cause__ or e
                if attempt >= self.attempts:
                    break
                pause = self.delay_for(attempt)
                logger.warning(
                    "%s: transport failure (%s), retry %d/%d in %.1fs",
                    operation, last_exc, attempt, self.attempts - 1, pause,
                )
                sleep(pause)
        raise TransportError(operation, max(1, self.attempts), last_exc)


# ---------------------------------------------------------------------------
# Rate-limit tracking (thread-safe with circuit breaker)
# ---------------------------------------------------------------------------

class _RateLimiter:
    """Token bucket with an exponential backoff circuit breaker."""

    def __init__(self, max_budget: int = 10, decay_rate: float = 4.0,
                 sleep: Callable[[float], Any] = time.sleep):
        self._lock = threading.Lock()
        self._max_budget = max_budget
        self._decay_rate = decay_rate
        self._budget = float(max_budget)
        self._last_decay = time.monotonic()
        self._consecutive_errors = 0
        self._circuit_open_until = 0.0  # monotonic timestamp; 0 = closed
        self._sleep = sleep

    def _decay(self):
        """Replenish budget based on elapsed time. Must hold _lock."""
        now = time.monotonic()
        elapsed = now - self._last_decay
        if elapsed > 0:
            self._budget = min(self._max_budget,
                               self._budget + elapsed * self._decay_rate)
            self._last_decay = now

    def consume(self, units: int = 1):
        """Block until budget is available, then deduct units."""
        while True:
            with self._lock:
                now = time.monotonic()
                if self._circuit_open_until > now:
                    wait = self._circuit_open_until - now
                    logger.warning("Circuit breaker open, waiting %.1fs", wait)
                else:
                    self._decay()
                    if self._budget >= units:
                        self._budget -= units
                        return
                    wait = (units - self._budget) / self._decay_rate
                    logger.debug("Rate limit low (%.1f/%d), sleeping %.2fs",
                                 self._budget, self._max_budget, wait)

            # Sleep outside the lock
            self._sleep(min(wait, 5.0))

    def report_rate_error(self):
        """Called after HTTP 429 / KuCoin code 429000."""
        with self._lock:
            self._consecutive_errors += 1
            # 5s, 10s, 20s, 40s... capped at 60s
            backoff = min(60.0, 5.0 * (2 ** (self._consecutive_errors - 1)))
            self._circuit_open_until = time.monotonic() + backoff
            self._budget = 0.0
            logger.warning("Rate limit error #%d, circuit open for %.0fs",
                           self._consecutive_errors, backoff)

    def report_success(self):
        with self._lock:
            self._consecutive_errors = 0
            self._circuit_open_until = 0.0

    def budget_available(self) -> float:
        with self._lock:
            self._decay()
            return self._budget


# ---------------------------------------------------------------------------
# Signing helpers
# ---------------------------------------------------------------------------

def _hmac_b64(secret: str, message: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256)
    return base64.b64encode(mac.digest()).decode("utf-8")


def sign_passphrase(secret: str, passphrase: str) -> str:
    """Key-version-2 passphrase credential."""
    return _hmac_b64(secret, passphrase)


def sign_request(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """
    Create the KC-API-SIGN header value.

    path must include the query string exactly as it is sent.
    """
    return _hmac_b64(secret, timestamp + method.upper() + path + body)


def _to_decimal(value: Any, field: str = "") -> Decimal:
    if value is None or value == "":
        raise ResponseError(f"missing numeric field {field!r}")
    try:
        return Decimal(str(value))
    except ArithmeticError as e:
        raise ResponseError(f"bad numeric field {field!r}: {value!r}") from e


def lot_precision_from_increment(increment: Any) -> int:
    """Decimal places of a size increment ("0.00000001" -> 8, "1" -> 0)."""
    exp = _to_decimal(increment, "baseIncrement").normalize().as_tuple().exponent
    return max(0, -int(exp))


def normalize_status(data: dict) -> OrderStatus:
    """
    Fold KuCoin's order payloads into one status.

    Newer endpoints carry an explicit ``status`` string; the classic
    /api/v1/orders/{id} payload only has ``isActive`` + ``cancelExist``.
    """
    raw = data.get("status")
    if isinstance(raw, str) and raw:
        s = raw.strip().lower()
        if s in ("active", "open", "new", "match", "partially_filled"):
            return "active"
        if s in ("done", "filled", "closed"):
            # "done" on the new endpoints also covers cancelled remainders
            if data.get("cancelExist") and not _deal_size(data):
                return "cancelled"
            return "done"
        if s in ("cancelled", "canceled"):
            return "cancelled"
        if s in ("failed", "rejected", "fail"):
            return "failed"
        return "unknown"

    if "isActive" in data:
        if data.get("isActive"):
            return "active"
        if data.get("cancelExist"):
            return "cancelled"
        return "done"
    return "unknown"


def _deal_size(data: dict) -> Decimal:
    for key in ("dealSize", "filledSize"):
        if data.get(key) not in (None, ""):
            return _to_decimal(data[key], key)
    return Decimal("0")


# ===========================================================================
# Client
# ===========================================================================

class KucoinClient:
    """
    Symbol-scoped KuCoin spot client.

    Credentials, symbol and base URL default to the values in config.py;
    tests pass them explicitly.
    """

    def __init__(self, api_key: str = None, api_secret: str = None,
                 passphrase: str = None, symbol: str = None,
                 base_url: str = None, timeout: float = None,
                 retry_policy: RetryPolicy = None,
                 rate_limiter: _RateLimiter = None,
                 sleep: Callable[[float], Any] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.api_key = config.KUCOIN_API_KEY if api_key is None else api_key
        self._secret = config.KUCOIN_API_SECRET if api_secret is None else api_secret
        raw_pass = config.KUCOIN_API_PASSPHRASE if passphrase is None else passphrase
        self._passphrase = sign_passphrase(self._secret, raw_pass)
        self.symbol = symbol or config.SYMBOL
        self.base_url = (base_url or config.KUCOIN_BASE_URL).rstrip("/")
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        self.retry_policy = retry_policy or RetryPolicy(
            attempts=config.RETRY_ATTEMPTS, delay=config.RETRY_DELAY_SECONDS)
        self._limiter = rate_limiter or _RateLimiter(
            config.RATE_LIMIT_BURST, config.RATE_LIMIT_PER_SEC)
        self._sleep = sleep
        self._clock = clock

    # -- HTTP plumbing -----------------------------------------------------

    def _build_request(self, method: str, path: str, body: str) -> urllib.request.Request:
        """Build a freshly signed request.  Called once per attempt."""
        ts = str(int(self._clock() * 1000))
        headers = {
            "KC-API-KEY": self.api_key,
            "KC-API-SIGN": sign_request(self._secret, ts, method, path, body),
            "KC-API-TIMESTAMP": ts,
            "KC-API-PASSPHRASE": self._passphrase,
            "KC-API-KEY-VERSION": "2",
            "User-Agent": "KucoinGridBot/1.0",
        }
        data = None
        if body and method != "GET":
            data = body.encode("utf-8")
            headers["Content-Type"] = "application/json"
        return urllib.request.Request(self.base_url + path, data=data,
                                      headers=headers, method=method)

    def _open(self, req: urllib.request.Request) -> Any:
        """Send one request.  Raises _TransientFailure for retryable errors."""
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                text = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            text = e.read().decode("utf-8", errors="replace")
            if e.code == 429:
                self._limiter.report_rate_error()
                raise _TransientFailure(f"HTTP 429 from {req.full_url}") from e
            try:
                # KuCoin reports most rejections as 4xx + a normal envelope
                return json.loads(text)
            except ValueError:
                if e.code >= 500:
                    raise _TransientFailure(f"HTTP {e.code} from {req.full_url}") from e
                raise ResponseError(f"HTTP {e.code} from {req.full_url}: {text[:200]}") from e
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            logger.debug("Transport error for %s: %s", req.full_url, e)
            raise _TransientFailure(str(e)) from e

        try:
            return json.loads(text)
        except ValueError as e:
            raise ResponseError(f"non-JSON response from {req.full_url}: {text[:200]}") from e

    def _request(self, method: str, path: str, params: dict = None,
                 body: dict = None) -> Any:
        """
        Signed call returning the envelope's ``data``.

        GET/DELETE follow the retry policy; POST is attempted once.
        """
        if params:
            path = path + "?" + urllib.parse.urlencode(params)
        body_str = json.dumps(body, separators=(",", ":")) if body else ""
        operation = f"{method} {path}"

        def attempt():
            self._limiter.consume(1)
            return self._open(self._build_request(method, path, body_str))

        policy = self.retry_policy
        if method == "POST":
            policy = replace(policy, attempts=1)
        envelope = policy.run(operation, attempt, sleep=self._sleep)
        return self._unwrap(envelope, operation)

    def _unwrap(self, envelope: Any, operation: str) -> Any:
        if not isinstance(envelope, dict):
            raise ResponseError(f"{operation}: unexpected envelope {envelope!r:.200}")
        code = envelope.get("code")
        if code is not None:
            code = str(code)
        if code != SUCCESS_CODE:
            if code == "429000":
                self._limiter.report_rate_error()
            raise ApiError(code or "missing", str(envelope.get("msg", envelope)), operation)
        self._limiter.report_success()
        if "data" not in envelope:
            raise ResponseError(f"{operation}: response has no data: {envelope!r:.200}")
        return envelope["data"]

    # ======================================================================
    # Market data
    # ======================================================================

    def fetch_ticker(self) -> TickerSnapshot:
        """Best bid/ask for the symbol."""
        d = self._request("GET", TICKER_PATH, {"symbol": self.symbol})
        if not isinstance(d, dict):
            raise ResponseError(f"ticker payload is not an object: {d!r:.200}")
        return TickerSnapshot(bid=_to_decimal(d.get("bestBid"), "bestBid"),
                              ask=_to_decimal(d.get("bestAsk"), "bestAsk"))

    def fetch_instrument_spec(self) -> InstrumentSpec:
        """Scan the full symbol catalog for our symbol's trading rules."""
        rows = self._request("GET", SYMBOLS_PATH)
        if not isinstance(rows, list):
            raise ResponseError("symbol catalog is not a list")
        for row in rows:
            if row.get("symbol") == self.symbol:
                return InstrumentSpec(
                    tick_size=_to_decimal(row.get("priceIncrement"), "priceIncrement"),
                    lot_precision=lot_precision_from_increment(row.get("baseIncrement")),
                    min_size=_to_decimal(row.get("baseMinSize"), "baseMinSize"),
                )
        raise SymbolNotFoundError(f"Symbol not found: {self.symbol}")

    def fetch_recent_closes(self, limit: int = 100, candle_type: str = None) -> list[Decimal]:
        """
        Close prices for the trailing ``limit`` candles, oldest first.

        The window is [now - limit * interval, now]; KuCoin may return
        fewer rows (no trades in a minute) and returns them newest first.
        """
        candle_type = candle_type or config.CANDLE_TYPE
        seconds = CANDLE_SECONDS.get(candle_type)
        if seconds is None:
            raise ValueError(f"unsupported candle type {candle_type!r}")
        end = int(self._clock())
        start = end - limit * seconds
        rows = self._request("GET", CANDLES_PATH, {
            "type": candle_type, "symbol": self.symbol,
            "startAt": start, "endAt": end,
        })
        if not isinstance(rows, list):
            raise ResponseError("candles payload is not a list")
        try:
            ordered = sorted(rows, key=lambda r: int(r[0]))
            closes = [_to_decimal(r[CANDLE_CLOSE_INDEX], "close") for r in ordered]
        except (IndexError, TypeError, ValueError) as e:
            raise ResponseError(f"malformed candle row: {e}") from e
        return closes[-limit:]

    # ======================================================================
    # Orders
    # ======================================================================

    def list_open_orders(self) -> list[OpenOrder]:
        """Active orders for the symbol (bare array or paginated ``items``)."""
        data = self._request("GET", ORDERS_PATH, {"symbol": self.symbol, "status": "active"})
        if isinstance(data, dict):
            items = data.get("items") or []
        elif isinstance(data, list):
            items = data
        else:
            items = []
        out = []
        for o in items:
            oid = o.get("id") or o.get("orderId")
            if not oid:
                continue
            out.append(OpenOrder(order_id=str(oid),
                                 price=_to_decimal(o.get("price", "0"), "price"),
                                 side=str(o.get("side", "")).lower()))
        return out

    def place_limit_order(self, side: Side, price: Decimal, size: Decimal,
                          client_oid: str = None) -> str:
        """
        Place a GTC limit order and return its orderId.

        ``client_oid`` is the idempotency token; pass the same value when
        re-issuing the same logical order.
        """
        body = {
            "clientOid": client_oid or uuid.uuid4().hex,
            "side": side.lower(),
            "symbol": self.symbol,
            "type": "limit",
            "price": format(Decimal(price), "f"),
            "size": format(Decimal(size), "f"),
            "timeInForce": "GTC",
        }
        d = self._request("POST", ORDERS_PATH, body=body)
        oid = None
        if isinstance(d, dict):
            oid = d.get("orderId") or d.get("order_id")
        if not oid:
            raise ResponseError(f"PlaceLimit returned no orderId: {d!r:.200}")
        logger.info("Placed %s %s %s @ %s -> %s",
                    self.symbol, side.upper(), body["size"], body["price"], oid)
        return str(oid)

    def get_order_status(self, order_id: str) -> OrderRecord:
        d = self._request("GET", f"{ORDERS_PATH}/{order_id}")
        if not isinstance(d, dict):
            raise ResponseError(f"order payload is not an object: {d!r:.200}")
        return OrderRecord(
            order_id=str(d.get("id", order_id)),
            side=str(d.get("side", "")).lower(),
            price=_to_decimal(d.get("price") or "0", "price"),
            requested_size=_to_decimal(d.get("size") or "0", "size"),
            deal_size=_deal_size(d),
            status=normalize_status(d),
        )

    def check_fill(self, order_id: str) -> OrderRecord | None:
        """
        Poll one resting order.

        Returns the record once it is done, None while it is still working
        (or in an unrecognised state), and raises OrderLifecycleError when it
        was cancelled or failed instead.
        """
        rec = self.get_order_status(order_id)
        if rec.status == "done":
            return rec
        if rec.status in ("cancelled", "failed"):
            raise OrderLifecycleError(order_id, rec.status)
        if rec.status == "unknown":
            logger.debug("Order %s has an unrecognised status payload", order_id)
        return None

    def cancel_order(self, order_id: str) -> None:
        self._request("DELETE", f"{ORDERS_PATH}/{order_id}")
        logger.info("Cancelled order %s", order_id)

    def cancel_all_open_orders(self) -> int:
        """
        Cancel every active order on the symbol, one by one.

        A failure part-way through propagates and leaves the remaining
        orders live; callers re-list before assuming a clean book.
        """
        orders = self.list_open_orders()
        for o in orders:
            self.cancel_order(o.order_id)
        if orders:
            logger.info("Cancelled %d open orders on %s", len(orders), self.symbol)
        return len(orders)
