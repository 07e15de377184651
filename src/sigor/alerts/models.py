"""In-app dispatch alert shown to a vehicle's crew."""

from urllib.parse import quote_plus

from pydantic import BaseModel


class DispatchAlert(BaseModel):
    """A dispatch of the crew's vehicle, joined with occurrence details.

    ``id`` is the dispatch id. Alerts live only in the pipeline's memory;
    they are never stored.
    """

    id: str
    occurrence_id: str
    occurrence_code: str
    occurrence_title: str
    occurrence_priority: str
    occurrence_address: str | None = None
    vehicle_identifier: str

    @property
    def navigation_url(self) -> str | None:
        """Maps search link for the occurrence address, if there is one."""
        if not self.occurrence_address:
            return None
        return (
            "https://www.google.com/maps/search/?api=1&query="
            + quote_plus(self.occurrence_address)
        )

    @property
    def notification_title(self) -> str:
        return f"🚨 New Occurrence - {self.occurrence_code}"

    @property
    def notification_body(self) -> str:
        return f"{self.occurrence_title}\n{self.occurrence_address or ''}"
