"""
HTTP client for the MoMo wallet payment gateway.

Builds signed create-payment requests and returns the provider's response,
which carries the ``payUrl`` the customer is redirected to.
"""
import logging
import re
import time
from decimal import Decimal
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from .. import crud, models
from ..config import MomoSettings
from ..exceptions import Forbidden, GatewayError, InvalidCallback, InvalidState, NotFound
from ..signature import CREATE_REQUEST_FIELDS, Signer, ordered_fields

logger = logging.getLogger(__name__)

REQUEST_TYPE = "captureWallet"
LANG = "vi"
ORDER_ID_PREFIX = re.compile(r"[0-9]+")


def format_amount(amount: Decimal) -> str:
    """Render an amount the way the provider expects: no trailing ``.00``."""
    amount = Decimal(str(amount))
    if amount == amount.to_integral_value():
        return str(int(amount))
    return format(amount.normalize(), "f")


def build_request_id(order_id: int, epoch_millis: int) -> str:
    return f"{order_id}-{epoch_millis}"


def parse_order_id(request_id: str) -> int:
    """
    Recover the internal order id from a ``{orderId}-{epochMillis}`` identifier.

    Raises:
        InvalidCallback: if the identifier does not carry a positive order id
    """
    prefix = str(request_id).split("-", 1)[0]
    if not ORDER_ID_PREFIX.fullmatch(prefix) or int(prefix) <= 0:
        raise InvalidCallback(f"Unrecognized request id: {request_id!r}")
    return int(prefix)


class MomoClient:
    """
    MoMo create-payment client.

    Args:
        settings: MoMo credentials and endpoints
        signer: Signer keyed with the MoMo secret (built from settings if omitted)
        transport: Optional httpx transport, used to fake the provider in tests
        clock: Returns the current time in seconds
    """

    def __init__(
        self,
        settings: MomoSettings,
        signer: Optional[Signer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.signer = signer or Signer(settings.secret_key)
        self._transport = transport
        self._clock = clock

    def build_request(self, order: models.Order) -> dict:
        """
        Build the signed request body for ``order``.

        The request id doubles as the provider order id so the IPN callback
        can be traced back to the internal order.
        """
        request_id = build_request_id(order.id, int(self._clock() * 1000))
        body = {
            "partnerCode": self.settings.partner_code,
            "partnerName": self.settings.partner_name,
            "storeId": self.settings.store_id,
            "requestId": request_id,
            "amount": format_amount(order.total),
            "orderId": request_id,
            "orderInfo": f"Pay for Order #{order.id}",
            "redirectUrl": self.settings.redirect_url,
            "ipnUrl": self.settings.ipn_url,
            "lang": LANG,
            "requestType": REQUEST_TYPE,
            "autoCapture": True,
            "extraData": "",
        }
        signed = dict(body, accessKey=self.settings.access_key)
        body["signature"] = self.signer.sign(ordered_fields(CREATE_REQUEST_FIELDS, signed))
        return body

    async def send(self, body: dict) -> dict:
        """
        POST a signed request to the provider.

        Raises:
            GatewayError: on transport failure, timeout, error status, a body
                that is not JSON, or a non-zero provider resultCode
        """
        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout, transport=self._transport) as client:
                response = await client.post(self.settings.endpoint, json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"MoMo create error for {body['requestId']}: {e}")
            raise GatewayError("Failed to create MoMo payment") from e
        except ValueError as e:
            logger.error(f"MoMo returned a non-JSON body for {body['requestId']}: {e}")
            raise GatewayError("Failed to create MoMo payment") from e

        if not isinstance(data, dict) or data.get("resultCode", 0) != 0:
            logger.error(f"MoMo rejected {body['requestId']}: {data}")
            raise GatewayError("Failed to create MoMo payment")
        return data

    async def create_payment(self, db: Session, order_id: int, user_id: int) -> dict:
        """
        Start a MoMo payment for one of the user's PENDING orders.

        The payment row is created on the first call and reused afterwards.
        Nothing is retried automatically.

        Args:
            db: Database session
            order_id: Order to pay
            user_id: Authenticated user, must own the order

        Returns:
            The provider response, including ``payUrl``

        Raises:
            NotFound: if the order does not exist
            Forbidden: if another user owns it
            InvalidState: if the order is no longer PENDING
            GatewayError: if the provider call fails
        """
        db_order = db.get(models.Order, order_id)
        if db_order is None:
            raise NotFound("Order not found")
        if db_order.user_id != user_id:
            raise Forbidden("Unauthorized")
        if db_order.status != models.OrderStatus.PENDING:
            raise InvalidState(f"Order cannot be paid (current status: {db_order.status.value})")

        crud.get_or_create_payment(db, db_order)

        body = self.build_request(db_order)
        logger.info(f"Creating MoMo payment for order #{order_id} (request {body['requestId']})")
        return await self.send(body)
