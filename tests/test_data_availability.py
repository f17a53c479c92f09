"""
Tests for the data-availability proof poller.

Test plan:
- is_not_ready: 404, and 400 whose body says "not found"; nothing else
- Polls through 404s until the proof is served
- 400 "not found" is polled through
- Transport errors are polled through
- Any other HTTP error (500, 400 without "not found") is fatal at once
- Ceiling reached → ProofTimeoutError with round, last status and bytes
- A 200 with a malformed proof → DataAvailabilityError
- Request payload carries votingRoundId and requestBytes
"""

import json
from collections.abc import Callable

import httpx
import pytest

from fassets_bridge.attestation.data_availability import DataAvailabilityClient, is_not_ready
from fassets_bridge.attestation.http import JsonPoster
from fassets_bridge.errors import DataAvailabilityError, ErrorKind, ProofTimeoutError

from conftest import make_proof

# ---------------------------------------------------------------------------
# Fake time and transport
# ---------------------------------------------------------------------------

DA_URL = "https://da.test"
ROUND = 12345
REQUEST_BYTES = "0x" + "ab" * 40


class FakeTime:
    """Monotonic clock advanced only by sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class ScriptedHandler:
    """Serves responses in order; the last one repeats."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        item = self.responses[index]
        if isinstance(item, Exception):
            raise item
        return item


def _client(handler: Callable[[httpx.Request], httpx.Response], time: FakeTime) -> DataAvailabilityClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DataAvailabilityClient(
        DA_URL,
        JsonPoster("key", client=http),
        poll_interval=10.0,
        timeout=30.0,
        sleep=time.sleep,
        clock=time.clock,
    )


# ---------------------------------------------------------------------------
# is_not_ready
# ---------------------------------------------------------------------------


class TestIsNotReady:
    def test_404(self) -> None:
        assert is_not_ready(404, "")

    def test_400_not_found(self) -> None:
        assert is_not_ready(400, '{"error": "Attestation request Not Found"}')

    def test_400_other(self) -> None:
        assert not is_not_ready(400, "invalid request bytes")

    def test_500(self) -> None:
        assert not is_not_ready(500, "not found")


# ---------------------------------------------------------------------------
# get_proof
# ---------------------------------------------------------------------------


class TestPolling:
    @pytest.mark.asyncio
    async def test_polls_through_404(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(
            httpx.Response(404),
            httpx.Response(404),
            httpx.Response(200, json=make_proof(ROUND)),
        )
        proof = await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)

        assert proof["response"]["votingRound"] == ROUND
        assert len(handler.requests) == 3
        assert time.sleeps == [10.0, 10.0]

    @pytest.mark.asyncio
    async def test_polls_through_400_not_found(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(
            httpx.Response(400, text="request not found"),
            httpx.Response(200, json=make_proof(ROUND)),
        )
        proof = await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)
        assert proof["proof"] == make_proof(ROUND)["proof"]

    @pytest.mark.asyncio
    async def test_polls_through_transport_error(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(
            httpx.ConnectError("connection reset"),
            httpx.Response(200, json=make_proof(ROUND)),
        )
        await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_sends_round_and_bytes(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(httpx.Response(200, json=make_proof(ROUND)))
        await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)

        request = handler.requests[0]
        assert request.url.path == "/api/v1/fdc/proof-by-request-round"
        assert json.loads(request.content) == {
            "votingRoundId": ROUND,
            "requestBytes": REQUEST_BYTES,
        }


class TestFatal:
    @pytest.mark.asyncio
    async def test_server_error_is_fatal(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(httpx.Response(500, text="internal"))

        with pytest.raises(DataAvailabilityError) as exc_info:
            await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)
        assert exc_info.value.status_code == 500
        assert len(handler.requests) == 1
        assert time.sleeps == []

    @pytest.mark.asyncio
    async def test_bad_request_is_fatal(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(httpx.Response(400, text="invalid request bytes"))

        with pytest.raises(DataAvailabilityError):
            await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)

    @pytest.mark.asyncio
    async def test_malformed_proof(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(httpx.Response(200, json={"proof": ["0x12"], "response": {}}))

        with pytest.raises(DataAvailabilityError) as exc_info:
            await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)
        assert exc_info.value.kind == ErrorKind.DATA_AVAILABILITY_ERROR


class TestTimeout:
    @pytest.mark.asyncio
    async def test_ceiling_raises_proof_timeout(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(httpx.Response(404))

        with pytest.raises(ProofTimeoutError) as exc_info:
            await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)

        exc = exc_info.value
        assert exc.voting_round_id == ROUND
        assert exc.last_status == 404
        assert exc.request_bytes == REQUEST_BYTES
        assert exc.kind == ErrorKind.PROOF_TIMEOUT
        # Polls at t=0, 10, 20, 30.
        assert len(handler.requests) == 4

    @pytest.mark.asyncio
    async def test_timeout_after_only_transport_errors(self) -> None:
        time = FakeTime()
        handler = ScriptedHandler(httpx.ConnectError("down"))

        with pytest.raises(ProofTimeoutError) as exc_info:
            await _client(handler, time).get_proof(ROUND, REQUEST_BYTES)
        assert exc_info.value.last_status is None
