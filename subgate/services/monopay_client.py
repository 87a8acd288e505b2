# subgate/services/monopay_client.py

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import aiohttp

from subgate.services.exceptions import GatewayError
from subgate.services.interfaces import Invoice


@dataclass(frozen=True)
class MonoPayConfig:
    token: str
    ccy: int = 980
    redirect_url: str = ""
    timeout_sec: float = 15.0


class MonoPayClient:
    BASE_URL = "https://api.monobank.ua/api/merchant"

    def __init__(self, cfg: MonoPayConfig):
        self.cfg = cfg
        self._headers = {"X-Token": cfg.token, "Content-Type": "application/json"}
        self._timeout = aiohttp.ClientTimeout(total=cfg.timeout_sec)

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(method, url, headers=self._headers, **kwargs) as r:
                    text = await r.text()
                    try:
                        data = json.loads(text) if text else {}
                    except ValueError:
                        data = {"_non_json_body": text}

                    if r.status >= 400:
                        raise GatewayError(f"MonoPay {method} {url} failed: body={data}", http_status=r.status)
                    return data
        except aiohttp.ClientError as e:
            raise GatewayError(f"MonoPay {method} {url} network error: {e!r}") from e
        except asyncio.TimeoutError as e:
            raise GatewayError(f"MonoPay {method} {url} timed out") from e

    async def create_invoice(self, amount_minor: int, reference: str, description: str) -> Invoice:
        payload: dict[str, Any] = {
            "amount": amount_minor,
            "ccy": self.cfg.ccy,
            "merchantPaymInfo": {"reference": reference, "destination": description},
        }
        # без webHookUrl: статусы забираем опросом
        if self.cfg.redirect_url:
            payload["redirectUrl"] = self.cfg.redirect_url

        data = await self._request("POST", f"{self.BASE_URL}/invoice/create", data=json.dumps(payload))

        invoice_id = data.get("invoiceId") or ""
        # разные версии API отдают разные имена поля
        pay_url = data.get("pageUrl") or data.get("paymentPageUrl") or data.get("payUrl") or ""
        if not invoice_id or not pay_url:
            raise GatewayError(f"MonoPay create_invoice returned incomplete body: {data}")
        return Invoice(invoice_id=invoice_id, pay_url=pay_url)

    async def get_invoice_status(self, invoice_id: str) -> str:
        data = await self._request(
            "GET",
            f"{self.BASE_URL}/invoice/status",
            params={"invoiceId": invoice_id},
        )
        status = data.get("status")
        if not status:
            raise GatewayError(f"MonoPay get_invoice_status returned no status: {data}")
        return str(status)
