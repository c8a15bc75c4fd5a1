"""
Tests for report template endpoints.
"""

import pytest
from fastapi import status
from httpx import AsyncClient

TEMPLATES_URL = "/api/v1/report-templates"

STRUCTURE = {
    "sections": [
        {"id": "head", "type": "header", "title": "Revenue"},
        {"id": "trend", "type": "chart", "content": {"chartType": "line", "dataSource": "data"}},
        {"id": "rows", "type": "table", "content": {"tableColumns": ["period", "revenue"]}},
    ],
}


async def create_template(client: AsyncClient, headers: dict[str, str], **overrides) -> dict:
    payload = {
        "name": "Revenue board",
        "reportType": "REVENUE_ANALYSIS",
        "structure": STRUCTURE,
        "tags": ["finance"],
    }
    payload.update(overrides)
    response = await client.post(TEMPLATES_URL, json=payload, headers=headers)
    assert response.status_code == status.HTTP_201_CREATED, response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_template(
    client: AsyncClient,
    agent_headers: dict[str, str],
    agent,
) -> None:
    """Test creating a template."""
    data = await create_template(client, agent_headers)

    assert data["name"] == "Revenue board"
    assert data["report_type"] == "REVENUE_ANALYSIS"
    assert data["version"] == "1.0"
    assert data["created_by_id"] == agent.id
    assert data["tags"] == ["finance"]
    assert data["structure"]["sections"][1]["content"]["chart_type"] == "line"
    assert data["layout"]["page_size"] == "A4"
    assert data["can_edit"] is True


@pytest.mark.asyncio
async def test_create_template_invalid_structure(
    client: AsyncClient,
    agent_headers: dict[str, str],
) -> None:
    response = await client.post(
        TEMPLATES_URL,
        json={
            "name": "Broken",
            "reportType": "REVENUE_ANALYSIS",
            "structure": {"sections": [{"id": "logo", "type": "image"}]},
        },
        headers=agent_headers,
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    error = response.json()["error"]
    assert error["code"] == "TEMPLATE_STRUCTURE_INVALID"
    assert error["details"]["errors"] == [
        'Section type "image" is not allowed for report type "REVENUE_ANALYSIS"'
    ]


@pytest.mark.asyncio
async def test_validate_template(
    client: AsyncClient,
    agent_headers: dict[str, str],
) -> None:
    """Validation reports problems without saving anything."""
    response = await client.post(
        f"{TEMPLATES_URL}/validate",
        json={"reportType": "REVENUE_ANALYSIS", "structure": STRUCTURE},
        headers=agent_headers,
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"is_valid": True, "errors": []}

    response = await client.post(
        f"{TEMPLATES_URL}/validate",
        json={"reportType": "REVENUE_ANALYSIS", "structure": {"sections": []}},
        headers=agent_headers,
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["is_valid"] is False

    response = await client.get(TEMPLATES_URL, headers=agent_headers)
    assert response.json()["pagination"]["total"] == 0


@pytest.mark.asyncio
async def test_list_templates_visibility(
    client: AsyncClient,
    agent_headers: dict[str, str],
    other_headers: dict[str, str],
) -> None:
    await create_template(client, agent_headers)
    await create_template(
        client, other_headers, name="Shared board", permissions={"isPublic": True}
    )
    await create_template(client, other_headers, name="Private board")

    response = await client.get(TEMPLATES_URL, headers=agent_headers)
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert sorted(t["name"] for t in data["items"]) == ["Revenue board", "Shared board"]
    assert data["summary"]["public"] == 1

    response = await client.get(
        TEMPLATES_URL, params={"isPublic": "true"}, headers=agent_headers
    )
    assert [t["name"] for t in response.json()["items"]] == ["Shared board"]
    assert response.json()["items"][0]["can_edit"] is False
    assert response.json()["items"][0]["can_duplicate"] is True


@pytest.mark.asyncio
async def test_get_update_delete_template(
    client: AsyncClient,
    agent_headers: dict[str, str],
    other_headers: dict[str, str],
) -> None:
    template = await create_template(client, agent_headers)
    url = f"{TEMPLATES_URL}/{template['id']}"

    response = await client.get(url, headers=other_headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN

    response = await client.put(url, json={"description": "Board pack"}, headers=agent_headers)
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["description"] == "Board pack"
    assert response.json()["version"] == "1.1"

    response = await client.put(url, json={"name": "Stolen"}, headers=other_headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN

    response = await client.delete(url, headers=agent_headers)
    assert response.status_code == status.HTTP_204_NO_CONTENT

    response = await client.get(url, headers=agent_headers)
    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_duplicate_template(
    client: AsyncClient,
    agent_headers: dict[str, str],
    other_headers: dict[str, str],
) -> None:
    template = await create_template(client, agent_headers, permissions={"isPublic": True})
    url = f"{TEMPLATES_URL}/{template['id']}/duplicate"

    response = await client.post(url, headers=other_headers)
    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert data["name"] == "Revenue board (Copy)"
    assert data["original_template_id"] == template["id"]
    assert data["permissions"]["is_public"] is False
    assert data["can_edit"] is True

    response = await client.post(url, json={"name": "My board"}, headers=other_headers)
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["name"] == "My board"


@pytest.mark.asyncio
async def test_preview_template(
    client: AsyncClient,
    agent_headers: dict[str, str],
) -> None:
    template = await create_template(client, agent_headers)

    response = await client.get(f"{TEMPLATES_URL}/{template['id']}/preview", headers=agent_headers)

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["template_id"] == template["id"]
    assert [s["type"] for s in data["sections"]] == ["header", "chart", "table"]
    assert data["sections"][2]["placeholder"] == {"columns": ["period", "revenue"]}
