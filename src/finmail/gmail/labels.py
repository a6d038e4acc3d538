"""Gmail label operations.

Usage:
    from finmail.gmail.labels import LabelManager

    labels = LabelManager(client)
    created = labels.create_label("Finance/Receipts", color="#16a766")
"""

from typing import TYPE_CHECKING, Any

from finmail.core.logging import get_logger

if TYPE_CHECKING:
    from finmail.gmail.client import GmailClient

logger = get_logger(__name__)

LABEL_TEXT_COLOR = "#ffffff"


class LabelManager:
    """Manages Gmail labels.

    Attributes:
        client: GmailClient instance for API calls
    """

    def __init__(self, client: "GmailClient"):
        self.client = client

    def list_labels(self) -> list[dict[str, Any]]:
        """List all labels in the mailbox (system and user)."""
        return self.client.get("/labels").get("labels", [])

    def create_label(self, name: str, color: str | None = None) -> dict[str, Any]:
        """Create a visible label.

        Args:
            name: Label name (use "/" for nesting)
            color: Optional background color; text is always white

        Returns:
            The created label resource

        Raises:
            GmailAPIError: If Gmail rejects the label (e.g. duplicate name, 409)
        """
        body: dict[str, Any] = {
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        if color:
            body["color"] = {"backgroundColor": color, "textColor": LABEL_TEXT_COLOR}

        label = self.client.post("/labels", json=body)
        logger.info("gmail_label_created", label_id=label.get("id"), name=name)
        return label
