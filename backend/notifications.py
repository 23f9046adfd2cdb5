"""Batched push fan-out for election events.

Recipients are split into fixed-size batches and each batch is posted on its
own. A failing batch is logged and counted; nothing here raises into the
election operation that triggered the notification.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import requests

from config import EXPO_ACCESS_TOKEN, EXPO_PUSH_URL, FACULTIES, GENERAL_SCOPE, HTTP_TIMEOUT_SECONDS, PUSH_BATCH_SIZE
from errors import ServiceTimeout, ServiceUnavailable
from models import STATUS_ENDED, STATUS_ONGOING, Election

logger = logging.getLogger(__name__)

PUSH_TOKEN_PATTERN = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[[^\]]+\]$")


def is_push_token(value: str | None) -> bool:
    return bool(value) and PUSH_TOKEN_PATTERN.match(value) is not None


def chunked(items: list[Any], size: int) -> list[list[Any]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


def scope_label(faculty_scope: str) -> str:
    if faculty_scope == GENERAL_SCOPE:
        return "all"
    for name, faculty_id in FACULTIES.items():
        if str(faculty_id) == faculty_scope:
            return name
    return faculty_scope


class ExpoPushChannel:
    def __init__(self, url: str = EXPO_PUSH_URL, access_token: str = EXPO_ACCESS_TOKEN,
                 timeout: float = HTTP_TIMEOUT_SECONDS, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if access_token:
            self.headers["Authorization"] = f"Bearer {access_token}"

    def send_batch(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Post one batch; returns one ticket per message, in order."""
        try:
            resp = self.session.post(self.url, json=messages, headers=self.headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.Timeout as exc:
            raise ServiceTimeout("Push service timed out") from exc
        except requests.RequestException as exc:
            raise ServiceUnavailable(f"Push service error: {exc}") from exc
        try:
            body = resp.json()
        except ValueError as exc:
            raise ServiceUnavailable("Push service returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise ServiceUnavailable("Push service returned an unexpected body")
        if body.get("errors"):
            raise ServiceUnavailable(f"Push service rejected the batch: {body['errors']}", errors=body["errors"])
        tickets = body.get("data")
        if not isinstance(tickets, list):
            raise ServiceUnavailable("Push service response has no tickets")
        return tickets


@dataclass
class FanoutReport:
    recipients: int = 0
    skipped: int = 0
    batches: int = 0
    failed_batches: int = 0
    delivered: int = 0
    rejected: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipients": self.recipients,
            "skipped": self.skipped,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "delivered": self.delivered,
            "rejected": self.rejected,
        }


class NotificationFanout:
    def __init__(self, store, channel, batch_size: int = PUSH_BATCH_SIZE) -> None:
        self.store = store
        self.channel = channel
        self.batch_size = batch_size

    def dispatch(self, addresses: Iterable[str], title: str, body: str, data: dict[str, Any] | None = None) -> FanoutReport:
        report = FanoutReport()
        valid: list[str] = []
        for address in dict.fromkeys(addresses):
            if is_push_token(address):
                valid.append(address)
            else:
                report.skipped += 1
                logger.info("Skipping invalid push token %r", address)
        report.recipients = len(valid)

        messages = [
            {"to": address, "sound": "default", "title": title, "body": body, "data": data or {}, "priority": "high"}
            for address in valid
        ]
        for batch in chunked(messages, self.batch_size):
            report.batches += 1
            try:
                tickets = self.channel.send_batch(batch)
            except Exception as exc:  # noqa: BLE001
                report.failed_batches += 1
                report.errors.append(str(exc))
                logger.error("Error sending notification batch of %d: %s", len(batch), exc)
                continue
            for message, ticket in zip(batch, tickets):
                if isinstance(ticket, dict) and ticket.get("status") == "ok":
                    report.delivered += 1
                else:
                    report.rejected += 1
                    detail = ticket.get("message") if isinstance(ticket, dict) else ticket
                    logger.warning("Push rejected for %s: %s", message["to"], detail)
            missing = len(batch) - len(tickets)
            if missing > 0:
                report.rejected += missing
                report.errors.append(f"{missing} message(s) got no ticket")
                logger.error("Push service returned %d tickets for a batch of %d", len(tickets), len(batch))

        logger.info(
            "Fan-out %r: %d recipients, %d batches, %d failed",
            title, report.recipients, report.batches, report.failed_batches,
        )
        return report

    def _recipients(self, election: Election) -> list[str]:
        return self.store.device_tokens_for_scope(election.faculty_scope)

    def election_created(self, election: Election) -> FanoutReport:
        return self.dispatch(
            self._recipients(election),
            "New Election Created",
            f'A new election "{election.title}" has been created for {scope_label(election.faculty_scope)} students.',
            {"election_id": election.election_id, "type": "new_election"},
        )

    def election_status_changed(self, election: Election, new_status: str) -> FanoutReport:
        if new_status == STATUS_ONGOING:
            title = "Election Started"
            body = f'The election "{election.title}" has started. You can now cast your vote!'
        elif new_status == STATUS_ENDED:
            title = "Election Ended"
            body = f'The election "{election.title}" has ended. Check the results!'
        else:
            title = "Election Status Updated"
            body = f'The status of election "{election.title}" has been updated to {new_status}.'
        return self.dispatch(
            self._recipients(election),
            title,
            body,
            {"election_id": election.election_id, "type": "status_change", "new_status": new_status},
        )
