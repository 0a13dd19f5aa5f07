"""
Amazon Ads MCP Client
Connects to the official Amazon Ads MCP Server via Streamable HTTP transport.
Covers the calls the sync scheduler, validator and keyword engine need:
entity queries, target state updates and target performance reports.

Every failure leaves this module as an MCPError subclass:
RateLimitError for HTTP 429 (retried by services.backoff), TransportError
for everything else.
"""

import asyncio
import gzip
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx
from mcp.client.streamable_http import streamablehttp_client
from mcp import ClientSession

logger = logging.getLogger(__name__)

# ── Region URL Mapping ────────────────────────────────────────────────
REGION_URLS = {
    "na": "https://advertising-ai.amazon.com/mcp",
    "eu": "https://advertising-ai-eu.amazon.com/mcp",
    "fe": "https://advertising-ai-fe.amazon.com/mcp",
}

API_BASE_URLS = {
    "na": "https://advertising-api.amazon.com",
    "eu": "https://advertising-api-eu.amazon.com",
    "fe": "https://advertising-api-fe.amazon.com",
}

AD_PRODUCTS = ("SPONSORED_PRODUCTS", "SPONSORED_BRANDS", "SPONSORED_DISPLAY")

REPORT_MEDIA_TYPE = "application/vnd.createasyncreportrequest.v3+json"
TARGETING_REPORT_COLUMNS = (
    "date", "campaignId", "keywordId", "targeting", "keywordType",
    "impressions", "clicks", "cost", "purchases7d", "sales7d",
)


# ══════════════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════════════

class MCPError(Exception):
    """Base exception for Amazon Ads API errors."""

    status_code: Optional[int] = None


class RateLimitError(MCPError):
    """Amazon Ads throttled the request (HTTP 429)."""

    status_code = 429

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(MCPError):
    """Any other failure: network, authorization, validation, 5xx."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _find_http_status_error(exc: BaseException) -> Optional[httpx.HTTPStatusError]:
    """
    The MCP transport runs inside an anyio task group, so the HTTP error that
    caused a failure may be wrapped in an ExceptionGroup or chained as a cause.
    """
    seen: set[int] = set()
    stack: list[Optional[BaseException]] = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, httpx.HTTPStatusError):
            return current
        if isinstance(current, BaseExceptionGroup):
            stack.extend(current.exceptions)
        stack.append(current.__cause__)
        stack.append(current.__context__)
    return None


def classify_error(exc: BaseException, context: str) -> MCPError:
    """Map any exception raised while talking to Amazon Ads onto the MCPError taxonomy."""
    if isinstance(exc, MCPError):
        return exc
    http_error = _find_http_status_error(exc)
    if http_error is not None:
        status = http_error.response.status_code
        if status == 429:
            return RateLimitError(
                f"{context}: rate limited",
                retry_after=_parse_retry_after(http_error.response.headers.get("Retry-After")),
            )
        return TransportError(f"{context}: HTTP {status}", status_code=status)
    return TransportError(f"{context}: {exc}")


def _raise_for_status(resp: httpx.Response, context: str) -> None:
    if resp.status_code == 429:
        raise RateLimitError(
            f"{context}: rate limited",
            retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
        )
    if resp.status_code >= 400:
        raise TransportError(f"{context} ({resp.status_code}): {resp.text[:500]}", status_code=resp.status_code)


# ══════════════════════════════════════════════════════════════════════
#  CLIENT
# ══════════════════════════════════════════════════════════════════════

class AmazonAdsMCP:
    """
    One account's view of Amazon Ads. Entity reads and target updates go
    through MCP tools; target performance comes from the v3 Reporting API
    over plain HTTP.
    """

    REPORT_POLL_SECONDS = 10
    REPORT_MAX_WAIT_SECONDS = 300
    MAX_PAGES = 20

    def __init__(
        self,
        client_id: str,
        access_token: str,
        region: str = "na",
        profile_id: Optional[str] = None,
        account_id: Optional[str] = None,
    ):
        self.client_id = client_id
        self.access_token = access_token
        self.region = region.lower()
        self.profile_id = profile_id
        self.account_id = account_id

    @property
    def url(self) -> str:
        url = REGION_URLS.get(self.region)
        if not url:
            raise ValueError(f"Unsupported region: {self.region}. Use na, eu, or fe.")
        return url

    @property
    def api_base_url(self) -> str:
        return API_BASE_URLS.get(self.region, API_BASE_URLS["na"])

    @property
    def headers(self) -> dict[str, str]:
        h = {
            "Amazon-Ads-ClientId": self.client_id,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json, text/event-stream",
        }
        if self.profile_id:
            h["Amazon-Advertising-API-Scope"] = self.profile_id
        if self.account_id:
            h["Amazon-Ads-AccountID"] = self.account_id
        if self.profile_id or self.account_id:
            # pin every call to this account instead of letting the server pick
            h["Amazon-Ads-AI-Account-Selection-Mode"] = "FIXED"
        return h

    def _reporting_headers(self, accept: Optional[str] = None) -> dict[str, str]:
        h = {
            "Content-Type": REPORT_MEDIA_TYPE,
            "Amazon-Advertising-API-ClientId": self.client_id,
            "Authorization": f"Bearer {self.access_token}",
        }
        if accept:
            h["Accept"] = accept
        if self.profile_id:
            h["Amazon-Advertising-API-Scope"] = self.profile_id
        return h

    @asynccontextmanager
    async def _session(self, context: str) -> AsyncIterator[ClientSession]:
        """An initialized MCP session; any failure inside leaves as an MCPError."""
        try:
            async with streamablehttp_client(url=self.url, headers=self.headers) as (read, write, _):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    yield session
        except MCPError:
            raise
        except Exception as e:
            error = classify_error(e, context)
            logger.error(f"MCP {context} failed: {error}")
            raise error from e

    async def call_tool(self, tool_name: str, arguments: Optional[dict[str, Any]] = None) -> Any:
        arguments = arguments or {}
        logger.info(f"MCP call: {tool_name} ({', '.join(arguments) or 'no args'})")
        async with self._session(f"call {tool_name}") as session:
            result = await session.call_tool(tool_name, arguments)
        text = _result_text(result)
        if getattr(result, "isError", False):
            raise TransportError(f"{tool_name} returned an error: {text[:500]}")
        try:
            return json.loads(text)
        except (json.JSONDecodeError, TypeError):
            if "Validation failed" in text or "Validation error" in text:
                raise TransportError(f"{tool_name} validation error: {text[:500]}")
            logger.warning(f"{tool_name} answered with non-JSON text: {text[:200]}")
            return {"result": text}

    async def list_tools(self) -> list[dict]:
        async with self._session("list tools") as session:
            result = await session.list_tools()
        return [{"name": t.name, "description": t.description} for t in result.tools]

    # ── Entity queries ────────────────────────────────────────────────
    # One ad product per request; callers loop over AD_PRODUCTS so each
    # request is retried on its own.

    async def _query_all(self, tool_name: str, body: dict, result_key: str) -> list[dict]:
        """Follow nextToken until exhausted (1000 items per page, MAX_PAGES at most)."""
        items: list[dict] = []
        next_token = None
        for page in range(1, self.MAX_PAGES + 1):
            page_body = {**body, "nextToken": next_token} if next_token else body
            result = await self.call_tool(tool_name, {"body": page_body})
            if isinstance(result, list):
                items.extend(result)
                break
            if not isinstance(result, dict):
                break
            batch = next(
                (result[k] for k in (result_key, "result", "results", "items") if isinstance(result.get(k), list)),
                [],
            )
            items.extend(batch)
            next_token = result.get("nextToken")
            if not next_token:
                break
        logger.info(f"{tool_name}: {len(items)} item(s) in {page} page(s)")
        return items

    @staticmethod
    def _product_filter(ad_product: str) -> dict:
        return {"adProductFilter": {"include": [ad_product]}}

    async def query_campaigns(self, ad_product: str = "SPONSORED_PRODUCTS") -> list[dict]:
        return await self._query_all(
            "campaign_management-query_campaign", self._product_filter(ad_product), "campaigns"
        )

    async def query_ad_groups(self, ad_product: str = "SPONSORED_PRODUCTS", campaign_id: str = None) -> list[dict]:
        body = self._product_filter(ad_product)
        if campaign_id:
            body["campaignIdFilter"] = {"include": [campaign_id]}
        return await self._query_all("campaign_management-query_ad_group", body, "adGroups")

    async def query_targets(self, ad_product: str = "SPONSORED_PRODUCTS", ad_group_id: str = None) -> list[dict]:
        """Keywords and product targets."""
        body = self._product_filter(ad_product)
        if ad_group_id:
            body["adGroupIdFilter"] = {"include": [ad_group_id]}
        return await self._query_all("campaign_management-query_target", body, "targets")

    async def set_target_state(self, target_id: str, state: str) -> Any:
        """Pause or enable one keyword/target. state is ENABLED or PAUSED."""
        body = {"targets": [{"targetId": target_id, "state": state.upper()}]}
        return await self.call_tool("campaign_management-update_target", {"body": body})

    # ── Target performance (v3 Reporting API) ─────────────────────────

    async def _http(self, method: str, url: str, context: str, timeout: float = 30.0, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=timeout) as http:
                resp = await http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{context} failed: {e}") from e
        _raise_for_status(resp, context)
        return resp

    async def create_targeting_report(self, start_date: str, end_date: str) -> str:
        """Request a daily spTargeting report for [start_date, end_date]; returns the report id."""
        body = {
            "name": f"adops targeting {start_date}..{end_date}",
            "startDate": start_date,
            "endDate": end_date,
            "configuration": {
                "adProduct": "SPONSORED_PRODUCTS",
                "reportTypeId": "spTargeting",
                "groupBy": ["targeting"],
                "columns": list(TARGETING_REPORT_COLUMNS),
                "timeUnit": "DAILY",
                "format": "GZIP_JSON",
            },
        }
        resp = await self._http(
            "POST", f"{self.api_base_url}/reporting/reports", "Targeting report creation",
            json=body, headers=self._reporting_headers(),
        )
        report_id = resp.json().get("reportId")
        if not report_id:
            raise TransportError(f"Targeting report creation returned no reportId: {resp.text[:200]}")
        logger.info(f"Targeting report {report_id} requested ({start_date} to {end_date})")
        return report_id

    async def get_report(self, report_id: str) -> dict:
        resp = await self._http(
            "GET", f"{self.api_base_url}/reporting/reports/{report_id}", "Report status",
            headers=self._reporting_headers(accept=REPORT_MEDIA_TYPE),
        )
        return resp.json()

    async def wait_for_report(self, report_id: str) -> dict:
        """Poll until the report leaves the queue. Returns the last status seen on timeout."""
        report: dict = {}
        for waited in range(self.REPORT_POLL_SECONDS, self.REPORT_MAX_WAIT_SECONDS + 1, self.REPORT_POLL_SECONDS):
            await asyncio.sleep(self.REPORT_POLL_SECONDS)
            report = await self.get_report(report_id)
            status = report.get("status", "UNKNOWN")
            logger.info(f"Report {report_id} after {waited}s: {status}")
            if status in ("COMPLETED", "FAILED", "CANCELLED"):
                return report
        logger.warning(f"Report {report_id} still pending after {self.REPORT_MAX_WAIT_SECONDS}s")
        return report

    async def download_report_rows(self, report: dict) -> list[dict]:
        url = report.get("url")
        if report.get("status") != "COMPLETED" or not url:
            return []
        resp = await self._http("GET", url, "Report download", timeout=60.0)
        try:
            raw = gzip.decompress(resp.content)
        except OSError:
            raw = resp.content
        parsed = json.loads(raw.decode("utf-8"))
        if isinstance(parsed, dict):
            return next((parsed[k] for k in ("rows", "data", "results") if isinstance(parsed.get(k), list)), [parsed])
        return parsed


def _result_text(result) -> str:
    return " ".join(
        str(getattr(part, "text", None) or getattr(part, "data", ""))
        for part in getattr(result, "content", None) or []
    )
