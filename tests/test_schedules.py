"""
Tests for report schedule endpoints.
"""

import pytest
from fastapi import status
from httpx import AsyncClient

SCHEDULES_URL = "/api/v1/reports/schedules"


async def create_schedule(client: AsyncClient, headers: dict[str, str], **overrides) -> dict:
    payload = {
        "title": "Weekly bookings",
        "type": "APPOINTMENT_SUMMARY",
        "parameters": {"dateRange": "last_7_days"},
        "schedule": {"frequency": "weekly", "dayOfWeek": 1, "hour": 9},
    }
    payload.update(overrides)
    response = await client.post(SCHEDULES_URL, json=payload, headers=headers)
    assert response.status_code == status.HTTP_201_CREATED, response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_schedule(
    client: AsyncClient,
    agent_headers: dict[str, str],
    agent,
    admin,
) -> None:
    """Test scheduling a new report definition."""
    data = await create_schedule(client, agent_headers, recipients=[{"userId": admin.id}])

    assert data["title"] == "Weekly bookings"
    assert data["report_type"] == "APPOINTMENT_SUMMARY"
    assert data["frequency"] == "weekly"
    assert data["day_of_week"] == 1
    assert data["hour"] == 9
    assert data["is_active"] is True
    assert data["created_by_id"] == agent.id
    assert data["next_run_time"] is not None
    assert data["run_count"] == 0
    assert data["recipients"][0]["user_id"] == admin.id


@pytest.mark.asyncio
async def test_create_schedule_invalid_recurrence(
    client: AsyncClient,
    agent_headers: dict[str, str],
) -> None:
    response = await client.post(
        SCHEDULES_URL,
        json={
            "title": "Broken",
            "type": "APPOINTMENT_SUMMARY",
            "parameters": {"dateRange": "last_7_days"},
            "schedule": {"frequency": "weekly", "hour": 25},
        },
        headers=agent_headers,
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    error = response.json()["error"]
    assert error["code"] == "INVALID_SCHEDULE"
    assert [e["field"] for e in error["details"]["errors"]] == ["dayOfWeek", "hour"]


@pytest.mark.asyncio
async def test_unknown_frequency_reports_every_violation(
    client: AsyncClient,
    agent_headers: dict[str, str],
) -> None:
    response = await client.post(
        SCHEDULES_URL,
        json={
            "title": "Broken",
            "type": "APPOINTMENT_SUMMARY",
            "parameters": {"dateRange": "last_7_days"},
            "schedule": {"frequency": "hourly", "hour": 25, "minute": 99},
        },
        headers=agent_headers,
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    error = response.json()["error"]
    assert error["code"] == "INVALID_SCHEDULE"
    assert [e["field"] for e in error["details"]["errors"]] == ["frequency", "hour", "minute"]

    schedule_id = (await create_schedule(client, agent_headers))["id"]
    response = await client.put(
        f"{SCHEDULES_URL}/{schedule_id}",
        json={"schedule": {"frequency": "fortnightly"}},
        headers=agent_headers,
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error"]["code"] == "INVALID_SCHEDULE"


@pytest.mark.asyncio
async def test_create_schedule_unknown_recipient(
    client: AsyncClient,
    agent_headers: dict[str, str],
) -> None:
    response = await client.post(
        SCHEDULES_URL,
        json={
            "title": "Nobody home",
            "type": "APPOINTMENT_SUMMARY",
            "parameters": {"dateRange": "last_7_days"},
            "schedule": {"frequency": "daily"},
            "recipients": [{"userId": "ghost"}],
        },
        headers=agent_headers,
    )

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert response.json()["error"]["details"]["missing"] == {"recipients": ["ghost"]}


@pytest.mark.asyncio
async def test_schedule_existing_report_once(
    client: AsyncClient,
    agent_headers: dict[str, str],
) -> None:
    """A report carries at most one active schedule."""
    response = await client.post(
        "/api/v1/reports",
        json={
            "title": "Daily board",
            "type": "OPERATIONAL_METRICS",
            "parameters": {"dateRange": "last_30_days"},
        },
        headers=agent_headers,
    )
    report_id = response.json()["id"]

    data = await create_schedule(
        client, agent_headers, reportId=report_id, schedule={"frequency": "daily", "hour": 7}
    )
    assert data["report_id"] == report_id
    assert data["title"] == "Daily board"

    response = await client.post(
        SCHEDULES_URL,
        json={"reportId": report_id, "schedule": {"frequency": "daily"}},
        headers=agent_headers,
    )
    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["error"]["code"] == "SCHEDULE_EXISTS"


@pytest.mark.asyncio
async def test_list_schedules(
    client: AsyncClient,
    agent_headers: dict[str, str],
    other_headers: dict[str, str],
    admin_headers: dict[str, str],
) -> None:
    await create_schedule(client, agent_headers)
    await create_schedule(client, agent_headers, schedule={"frequency": "daily"})
    await create_schedule(client, other_headers)

    response = await client.get(SCHEDULES_URL, headers=agent_headers)
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["pagination"]["total"] == 2
    assert data["summary"]["active"] == 2
    assert data["summary"]["by_frequency"] == {"daily": 1, "weekly": 1}

    response = await client.get(
        SCHEDULES_URL, params={"frequency": "weekly"}, headers=admin_headers
    )
    assert response.json()["pagination"]["total"] == 2


@pytest.mark.asyncio
async def test_get_update_delete_schedule(
    client: AsyncClient,
    agent_headers: dict[str, str],
    other_headers: dict[str, str],
) -> None:
    schedule = await create_schedule(client, agent_headers)
    url = f"{SCHEDULES_URL}/{schedule['id']}"

    response = await client.get(url, headers=other_headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN

    response = await client.put(
        url,
        json={"schedule": {"frequency": "daily", "hour": 6, "minute": 30}},
        headers=agent_headers,
    )
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["frequency"] == "daily"
    assert data["hour"] == 6
    assert data["minute"] == 30
    assert data["next_run_time"] is not None

    response = await client.delete(url, headers=agent_headers)
    assert response.status_code == status.HTTP_204_NO_CONTENT

    response = await client.get(url, headers=agent_headers)
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["is_active"] is False
    assert response.json()["next_run_time"] is None

    response = await client.get(f"{SCHEDULES_URL}/missing", headers=agent_headers)
    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_dispatch_requires_privileged_role(
    client: AsyncClient,
    agent_headers: dict[str, str],
    admin_headers: dict[str, str],
) -> None:
    """Only admins and supervisors trigger due runs."""
    await create_schedule(client, agent_headers)

    response = await client.post(f"{SCHEDULES_URL}/dispatch", headers=agent_headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN

    response = await client.post(f"{SCHEDULES_URL}/dispatch", headers=admin_headers)
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"dispatched": 0, "results": []}
