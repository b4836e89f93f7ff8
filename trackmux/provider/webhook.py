"""
Webhook provider adapter over HTTP.

The upstream service exposes one webhook whose subscription filter lists the
watched actor ids for a single event type. create POSTs a new webhook, update
PUTs the full desired filter (never a delta), lookup GETs the current one and
find_existing scans the webhook list for one carrying the configured name.
"""

import logging
from typing import Any, Dict, Optional, Set

import httpx

from trackmux.errors import FilterTooLargeError, ProviderError
from trackmux.models.config import ProviderConfig
from trackmux.models.subscription import ProviderSubscription, Thresholds
from trackmux.models.tracking import ActorId
from trackmux.provider.adapter import check_filter_size

logger = logging.getLogger(__name__)


class WebhookProviderAdapter:
    """ProviderAdapter backed by the provider's REST webhook endpoint."""

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.config.api_key, "Content-Type": "application/json"}

    def _subscription_body(self, filter_set: Set[ActorId], thresholds: Thresholds) -> dict:
        min_score = thresholds.min_score
        # The provider rejects scores outside [0, 1]; omit instead.
        if min_score is not None and not 0 <= min_score <= 1:
            min_score = None
        event_filter: Dict[str, Any] = {"fids": sorted(filter_set)}
        if min_score is not None:
            event_filter["minimum_trader_neynar_score"] = min_score
        if thresholds.min_amount_usd is not None:
            event_filter["minimum_token_amount_usdc"] = thresholds.min_amount_usd
        return {self.config.event_type: event_filter}

    async def _send(
        self,
        method: str,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
        path: str = "/webhook",
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                path,
                json=payload,
                params=params,
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Provider {method} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider {method} failed: {e}") from e

    def _check(self, response: httpx.Response, filter_size: int) -> Any:
        if response.status_code == 413:
            raise FilterTooLargeError(filter_size, status_code=413)
        if response.is_error:
            logger.error(
                "Provider responded %s: %s", response.status_code, response.text[:500]
            )
            raise ProviderError(
                f"Provider responded {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("Provider returned a non-JSON body") from e

    def _parse(self, response: httpx.Response, filter_size: int) -> ProviderSubscription:
        data = self._check(response, filter_size)
        webhook = data.get("webhook") if isinstance(data, dict) else None
        if not isinstance(webhook, dict) or data.get("success") is False:
            raise ProviderError("Provider response did not include a webhook")
        return self._to_subscription(webhook)

    def _to_subscription(self, webhook: Dict[str, Any]) -> ProviderSubscription:
        handle = webhook.get("webhook_id")
        if not handle:
            raise ProviderError("Provider webhook has no webhook_id")

        filters = (webhook.get("subscription") or {}).get("filters") or {}
        event_filter = filters.get(self.config.event_type) or {}
        return ProviderSubscription(
            handle=handle,
            filter_set=set(event_filter.get("fids") or []),
            target_url=webhook.get("target_url"),
            name=webhook.get("title") or webhook.get("name"),
        )

    async def create(
        self, filter_set: Set[ActorId], thresholds: Thresholds
    ) -> ProviderSubscription:
        check_filter_size(filter_set, self.config.max_filter_size)
        payload = {
            "name": self.config.webhook_name,
            "url": self.config.target_url,
            "subscription": self._subscription_body(filter_set, thresholds),
        }
        response = await self._send("POST", payload)
        subscription = self._parse(response, len(filter_set))
        logger.info(
            "Created provider subscription %s with %d actors",
            subscription.handle, len(filter_set),
        )
        return subscription

    async def update(
        self, handle: str, filter_set: Set[ActorId], thresholds: Thresholds
    ) -> ProviderSubscription:
        check_filter_size(filter_set, self.config.max_filter_size)
        payload = {
            "webhook_id": handle,
            "name": self.config.webhook_name,
            "url": self.config.target_url,
            "subscription": self._subscription_body(filter_set, thresholds),
        }
        response = await self._send("PUT", payload)
        subscription = self._parse(response, len(filter_set))
        logger.info(
            "Updated provider subscription %s to %d actors",
            subscription.handle, len(filter_set),
        )
        return subscription

    async def lookup(self, handle: str) -> Optional[ProviderSubscription]:
        response = await self._send("GET", params={"webhook_id": handle})
        if response.status_code == 404:
            return None
        return self._parse(response, 0)

    async def find_existing(self) -> Optional[ProviderSubscription]:
        """Find a webhook named after this deployment, so a lost handle can be adopted."""
        response = await self._send("GET", path="/webhook/list")
        data = self._check(response, 0)
        webhooks = data.get("webhooks") if isinstance(data, dict) else None
        if not isinstance(webhooks, list):
            raise ProviderError("Provider webhook list is malformed")
        for webhook in webhooks:
            if not isinstance(webhook, dict) or webhook.get("active") is False:
                continue
            if (webhook.get("title") or webhook.get("name")) == self.config.webhook_name:
                return self._to_subscription(webhook)
        return None
