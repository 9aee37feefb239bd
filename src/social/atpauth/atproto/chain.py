"""
Request middleware chain with the DPoP nonce handshake.

Every DPoP-protected request (PAR, token exchange, refresh, and resource server
calls) goes through `ChainMiddlewareClient`. The `DpopNonceMiddleware` signs a
fresh proof on every attempt, records each `DPoP-Nonce` the server hands out,
and asks the chain for exactly one resubmission when the server rejects the
proof for want of a nonce.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Optional,
    Sequence,
    Tuple,
)
import logging
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy

from social.atpauth.atproto.dpop import htu_for
from social.atpauth.model.session import OAuthSessionResult

RequestFunc = Callable[..., Awaitable[ClientResponse]]

ProofBuilder = Callable[[str, str, Optional[str]], str]

NonceCallback = Callable[[str], None]

DPOP_NONCE_HEADER = "DPoP-Nonce"

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=request.kwargs,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def json_body(self) -> dict[str, Any]:
        if isinstance(self.body, dict):
            return self.body
        return {}


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


def requires_dpop_nonce(chain_response: ChainResponse) -> bool:
    """
    True when the server rejected the proof with `use_dpop_nonce`.

    Authorization servers say so in the JSON body, resource servers in the
    `WWW-Authenticate: DPoP error="use_dpop_nonce"` challenge. Any other
    error is final, even when the response carries a rotated nonce.
    """
    if chain_response.body_matches_kv("error", "use_dpop_nonce"):
        return True
    challenge = chain_response.headers.get(hdrs.WWW_AUTHENTICATE, "")
    return "use_dpop_nonce" in challenge


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class DpopNonceMiddleware(RequestMiddlewareBase):
    """
    Attach a freshly signed DPoP proof and negotiate the server nonce.

    The proof builder is called on every attempt with (method, htu, nonce) so
    that a resubmission never reuses a `jti`. Every `DPoP-Nonce` response header
    is passed to `on_nonce`. Only a 400/401 response that carries a nonce and
    names `use_dpop_nonce` requests a retry.
    """

    def __init__(
        self,
        proof_builder: ProofBuilder,
        nonce: Optional[str] = None,
        on_nonce: Optional[NonceCallback] = None,
    ) -> None:
        super().__init__()
        self._proof_builder = proof_builder
        self.nonce = nonce
        self._on_nonce = on_nonce

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = self._proof_builder(
            request.method, htu_for(request.url), self.nonce
        )

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        new_nonce = chain_response.headers.get(DPOP_NONCE_HEADER)
        if new_nonce:
            self.nonce = new_nonce
            if self._on_nonce is not None:
                self._on_nonce(new_nonce)

        if chain_response.status == 401 or chain_response.status == 400:
            if new_nonce and requires_dpop_nonce(chain_response):
                logger.debug("DPoP nonce required by %s, retrying", request.url)
                if new_request is None:
                    new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class DpopAuthorizationMiddleware(DpopNonceMiddleware):
    """
    Authorize a resource server request with a DPoP-bound access token.

    Sends `Authorization: DPoP <token>` with a proof carrying `ath`, and keeps
    the session's resource server nonce current.
    """

    def __init__(self, session: OAuthSessionResult) -> None:
        super().__init__(
            lambda method, url, nonce: session.dpop.generate_proof_with_access_token(
                method, url, nonce, session.access_token
            ),
            nonce=session.resource_server_nonce,
            on_nonce=session.update_resource_server_nonce,
        )
        self._session = session

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.headers is None:
            request.headers = {}
        request.headers["Authorization"] = f"DPoP {self._session.access_token}"
        return await super().handle(next, request)


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: logging.Logger,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        self._logger.debug("Making request: %s %s", request.method, request.url)

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx={
                **(request.trace_request_ctx or {}),
            },
            **(request.kwargs or {}),
        )

        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    """
    Drive one logical request through the chain.

    Middleware may ask for a resubmission by returning a new request. The
    context resubmits until no middleware asks or `attempt_max` attempts have
    been made, then hands back the last response for the caller to judge.
    """

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: logging.Logger,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger
        self._raise_for_status = raise_for_status

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            self._logger.debug(
                "Attempt %d out of %d for %s %s",
                current_attempt,
                self._attempt_max,
                chain_request.method,
                chain_request.url,
            )

            if self.client_response is not None and not self.client_response.closed:
                self.client_response.close()

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None or current_attempt >= self._attempt_max:
                return client_response, chain_response

            chain_request = new_request

            if self._raise_for_status:
                client_response.raise_for_status()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession,
        logger: logging.Logger | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._logger: logging.Logger = logger or logging.getLogger("aiohttp_chain")
        self._raise_for_status = raise_for_status
        self._attempt_max = attempt_max

    def get(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_GET,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def post(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_POST,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        if raise_for_status is None:
            raise_for_status = self._raise_for_status

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
            raise_for_status=raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            raise_for_status=raise_for_status,
            attempt_max=self._attempt_max,
        )
