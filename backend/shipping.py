import logging
from typing import Dict, List, Optional

import requests

from errors import UpstreamServiceError, ValidationError

logger = logging.getLogger(__name__)

SHIPPO_API_URL = "https://api.goshippo.com"
DEFAULT_PARCEL = {
    "length": "30",
    "width": "20",
    "height": "10",
    "distance_unit": "cm",
    "mass_unit": "kg",
}


class ShippoClient:
    """Shipping rates and labels through the Shippo REST API."""

    def __init__(
        self,
        api_key: str,
        from_address: Optional[Dict] = None,
        base_url: str = SHIPPO_API_URL,
        timeout: float = 20,
    ):
        self.api_key = api_key
        self.from_address = from_address or {}
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, payload: Dict) -> Dict:
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={
                    "Authorization": f"ShippoToken {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Shippo request to %s failed: %s", path, exc)
            raise UpstreamServiceError(f"Shipping provider error: {exc}") from exc

    def get_rates(self, to_address: Dict, weight) -> List[Dict]:
        if not isinstance(to_address, dict) or not to_address:
            raise ValidationError("A destination address is required.")
        try:
            weight_value = float(weight)
        except (TypeError, ValueError):
            raise ValidationError("Parcel weight must be a number.")
        if weight_value <= 0:
            raise ValidationError("Parcel weight must be greater than zero.")

        shipment = self._post(
            "/shipments/",
            {
                "address_from": self.from_address,
                "address_to": to_address,
                "parcels": [dict(DEFAULT_PARCEL, weight=str(weight_value))],
                "async": False,
            },
        )
        return shipment.get("rates") or []

    def create_label(self, rate_id: str) -> Dict[str, Optional[str]]:
        if not rate_id:
            raise ValidationError("A rate id is required.")

        transaction = self._post(
            "/transactions/",
            {"rate": rate_id, "label_file_type": "PDF", "async": False},
        )
        if transaction.get("status") != "SUCCESS":
            messages = "; ".join(
                str(message.get("text") or message)
                for message in transaction.get("messages") or []
                if message
            )
            raise UpstreamServiceError(
                f"Failed to create label: {messages or transaction.get('status')}"
            )

        return {
            "labelUrl": transaction.get("label_url"),
            "trackingNumber": transaction.get("tracking_number"),
            "trackingUrl": transaction.get("tracking_url_provider"),
        }
