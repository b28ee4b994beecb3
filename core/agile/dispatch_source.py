"""Smart-charge dispatch sources (Intelligent Octopus Go)."""

import logging

import requests

from .models import Dispatch
from .time_utils import parse_iso_datetime

logger = logging.getLogger(__name__)

OCTOPUS_GRAPHQL_URL = "https://api.octopus.energy/v1/graphql/"

_TOKEN_MUTATION = """
mutation obtainKrakenToken($apiKey: String!) {
  obtainKrakenToken(input: {APIKey: $apiKey}) {
    token
  }
}
"""

_DISPATCH_QUERY = """
query getPlannedDispatches($accountNumber: String!) {
  plannedDispatches(accountNumber: $accountNumber) {
    start
    end
    meta {
      source
    }
  }
}
"""


class DispatchSource:
    """Abstract base class for dispatch sources."""

    def get_planned_dispatches(self) -> list[Dispatch]:
        raise NotImplementedError("Dispatch sources must implement get_planned_dispatches")


class MockDispatchSource(DispatchSource):
    def __init__(self, dispatches: list[Dispatch] | None = None) -> None:
        self.dispatches = dispatches or []

    def get_planned_dispatches(self) -> list[Dispatch]:
        return list(self.dispatches)


class OctopusDispatchSource(DispatchSource):
    """Planned dispatches from the Octopus Kraken GraphQL API.

    Failures are logged and give an empty list; a missed dispatch only means
    the slot is charged by the normal plan instead.
    """

    def __init__(self, api_key: str, account_number: str, timeout: int = 30) -> None:
        self.api_key = api_key
        self.account_number = account_number
        self.timeout = timeout
        self._token: str | None = None

    def _graphql(self, query: str, variables: dict, token: str | None = None) -> dict:
        headers = {"Authorization": token} if token else {}
        response = requests.post(
            OCTOPUS_GRAPHQL_URL,
            json={"query": query, "variables": variables},
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("errors"):
            raise ValueError(f"GraphQL errors: {payload['errors']}")
        return payload.get("data") or {}

    def _get_token(self) -> str:
        if self._token is None:
            data = self._graphql(_TOKEN_MUTATION, {"apiKey": self.api_key})
            self._token = data["obtainKrakenToken"]["token"]
        return self._token

    def get_planned_dispatches(self) -> list[Dispatch]:
        if not (self.api_key and self.account_number):
            return []

        try:
            data = self._graphql(
                _DISPATCH_QUERY, {"accountNumber": self.account_number}, self._get_token()
            )
        except (requests.RequestException, ValueError, KeyError) as e:
            # Tokens expire; fetch a fresh one next time
            self._token = None
            logger.error("Failed to get planned dispatches: %s", e)
            return []

        dispatches = []
        for entry in data.get("plannedDispatches") or []:
            dispatches.append(
                Dispatch(
                    start=parse_iso_datetime(entry["start"]),
                    end=parse_iso_datetime(entry["end"]),
                    source=(entry.get("meta") or {}).get("source"),
                )
            )
        if dispatches:
            logger.info("Retrieved %d planned IOG dispatches", len(dispatches))
        return dispatches
