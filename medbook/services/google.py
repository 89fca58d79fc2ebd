"""
Google Workspace Client

Narrow Calendar and Sheets operations used after a doctor decision:
create/delete a calendar event and append a row to the bookings sheet.

Authenticates with a service account through google-auth. Calendar goes
through the google-api-python-client discovery service, Sheets through
gspread. Both are blocking, so every call runs in a worker thread.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import gspread
import httplib2
import requests
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from medbook.config import settings
from medbook.db.models import Appointment, Language
from medbook.utils.timeutils import format_date, format_time

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/spreadsheets",
]


class GoogleSyncError(Exception):
    """Custom exception for Google Calendar/Sheets failures."""
    pass


def appointment_title(appointment: Appointment, language: Optional[Language] = None) -> str:
    if appointment.service is not None:
        return appointment.service.name_for(language)
    return appointment.custom_reason or "-"


def build_calendar_event(appointment: Appointment) -> Dict[str, Any]:
    """
    Calendar event body for a confirmed appointment.

    Start and end are local wall-clock times tagged with the business
    timezone.
    """
    patient = appointment.patient
    end = appointment.start_date_time + timedelta(minutes=appointment.duration_minutes)
    description_lines = [
        f"Phone: {patient.phone_number or '-'}",
        f"Telegram ID: {patient.telegram_user_id or '-'}",
    ]
    if appointment.custom_reason:
        description_lines.append(f"Reason: {appointment.custom_reason}")

    return {
        "summary": f"{patient.full_name} - {appointment_title(appointment)}",
        "description": "\n".join(description_lines),
        "start": {
            "dateTime": appointment.start_date_time.isoformat(),
            "timeZone": settings.business_timezone,
        },
        "end": {
            "dateTime": end.isoformat(),
            "timeZone": settings.business_timezone,
        },
    }


def build_sheet_row(appointment: Appointment) -> List[Union[str, int]]:
    patient = appointment.patient
    return [
        format_date(appointment.created_at.date()) if appointment.created_at else "",
        patient.full_name,
        patient.phone_number or "",
        appointment_title(appointment),
        format_date(appointment.start_date_time.date()),
        format_time(appointment.start_date_time.time()),
        appointment.duration_minutes,
        appointment.status.value,
        appointment.source,
        str(appointment.id),
    ]


# Statuses meaning the calendar event no longer exists
GONE_STATUSES = (404, 410)
TRANSPORT_ERRORS = (httplib2.HttpLib2Error, OSError, GoogleAuthError)
SHEETS_ERRORS = (
    gspread.exceptions.GSpreadException,
    requests.exceptions.RequestException,
    GoogleAuthError,
)


class GoogleWorkspaceClient:
    """
    Service-account client for Calendar and Sheets.

    Args:
        credentials_file: Path to the service account JSON key
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        credentials_file: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.credentials_file = credentials_file or settings.google_service_account_json
        self.timeout = timeout or settings.external_timeout_seconds
        self._credentials: Optional[service_account.Credentials] = None
        self._calendar: Any = None
        self._sheets: Optional[gspread.Client] = None

    @property
    def enabled(self) -> bool:
        return bool(self.credentials_file)

    def _get_credentials(self) -> service_account.Credentials:
        if not self.enabled:
            raise GoogleSyncError("Google service account is not configured")
        if self._credentials is None:
            try:
                self._credentials = service_account.Credentials.from_service_account_file(
                    self.credentials_file, scopes=SCOPES
                )
            except (OSError, ValueError, GoogleAuthError) as e:
                raise GoogleSyncError(f"Cannot load Google service account: {e}") from e
        return self._credentials

    def _get_calendar(self) -> Any:
        if self._calendar is None:
            http = AuthorizedHttp(
                self._get_credentials(), http=httplib2.Http(timeout=self.timeout)
            )
            self._calendar = build("calendar", "v3", http=http, cache_discovery=False)
        return self._calendar

    def _get_sheets(self) -> gspread.Client:
        if self._sheets is None:
            self._sheets = gspread.authorize(self._get_credentials())
            self._sheets.set_timeout(self.timeout)
        return self._sheets

    def _insert_event(self, calendar_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._get_calendar().events().insert(
                calendarId=calendar_id, body=event
            ).execute()
        except HttpError as e:
            raise GoogleSyncError(f"Calendar API returned status {e.resp.status}: {e}") from e
        except TRANSPORT_ERRORS as e:
            raise GoogleSyncError(f"Calendar request failed: {e}") from e

    def _delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Returns False when the event was already gone."""
        try:
            self._get_calendar().events().delete(
                calendarId=calendar_id, eventId=event_id
            ).execute()
        except HttpError as e:
            if e.resp.status in GONE_STATUSES:
                return False
            raise GoogleSyncError(f"Calendar API returned status {e.resp.status}: {e}") from e
        except TRANSPORT_ERRORS as e:
            raise GoogleSyncError(f"Calendar request failed: {e}") from e
        return True

    def _append_row(self, sheet_id: str, values: List[Union[str, int]]) -> None:
        try:
            worksheet = self._get_sheets().open_by_key(sheet_id).sheet1
            worksheet.append_row(
                values,
                value_input_option="USER_ENTERED",
                insert_data_option="INSERT_ROWS",
            )
        except SHEETS_ERRORS as e:
            raise GoogleSyncError(f"Sheets append failed: {e}") from e

    async def create_event(self, calendar_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a calendar event and return the API resource (with "id").

        Raises:
            GoogleSyncError: On auth, network, timeout or HTTP errors
        """
        created = await asyncio.to_thread(self._insert_event, calendar_id, event)
        logger.info(f"Created calendar event {created.get('id')}")
        return created

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        if await asyncio.to_thread(self._delete_event, calendar_id, event_id):
            logger.info(f"Deleted calendar event {event_id}")
        else:
            logger.info(f"Calendar event {event_id} already gone")

    async def append_row(self, sheet_id: str, values: List[Union[str, int]]) -> None:
        await asyncio.to_thread(self._append_row, sheet_id, values)
        logger.info(f"Appended row to sheet {sheet_id}")



_client: Optional[GoogleWorkspaceClient] = None


def get_google_client() -> GoogleWorkspaceClient:
    """Process-wide client so the service account session is reused."""
    global _client
    if _client is None:
        _client = GoogleWorkspaceClient()
    return _client
