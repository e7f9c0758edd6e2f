import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession


@pytest_asyncio.fixture
async def project_id(client):
    response = await client.post("/api/projects", json={"project_name": "ERP rollout"})
    assert response.status_code == 201
    return response.json()["id"]


@pytest_asyncio.fixture
async def stage_id(client, project_id):
    response = await client.post(f"/api/projects/{project_id}/stages", json={"stage_name": "Analysis"})
    assert response.status_code == 201
    return response.json()["id"]


async def create(client, project_id, **fields):
    response = await client.post(f"/api/projects/{project_id}/tasks", json=fields)
    assert response.status_code == 201, response.text
    return response.json()


async def test_create_and_get_task(client, project_id, stage_id):
    task = await create(client, project_id, task_name="Gather requirements", sold_days=4,
                        stage_id=stage_id, priority="high", due_date="2025-03-01")

    assert task["project_id"] == project_id
    assert task["stage_id"] == stage_id
    assert task["parent_task_id"] is None
    assert task["status"] == "todo"
    assert task["sold_days"] == 4

    response = await client.get(f"/api/tasks/{task['id']}")
    assert response.status_code == 200
    assert response.json()["task_name"] == "Gather requirements"
    assert response.json()["due_date"] == "2025-03-01"


@pytest.mark.parametrize("payload", [
    {"task_name": "Bad days", "sold_days": -1},
    {"task_name": "Too many days", "sold_days": 1e12},
    {"task_name": "Too precise", "sold_days": 1.234},
    {"task_name": "Bad status", "status": "finished"},
    {"task_name": "Bad priority", "priority": "critical"},
    {"task_name": ""},
    {},
])
async def test_create_task_validation_errors(client, project_id, payload):
    response = await client.post(f"/api/projects/{project_id}/tasks", json=payload)
    assert response.status_code == 400
    assert "detail" in response.json()


async def test_unknown_ids_return_404(client, project_id):
    assert (await client.get("/api/tasks/999")).status_code == 404
    assert (await client.put("/api/tasks/999", json={"status": "done"})).status_code == 404
    assert (await client.delete("/api/tasks/999")).status_code == 404
    assert (await client.get("/api/tasks/999/ancestors")).status_code == 404
    assert (await client.get("/api/projects/999")).status_code == 404

    response = await client.post("/api/projects/999/tasks", json={"task_name": "Nowhere"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Project 999 not found"

    response = await client.post(f"/api/projects/{project_id}/tasks",
                                 json={"task_name": "Lost", "parent_task_id": 999})
    assert response.status_code == 404


async def test_scenario_over_http(client, project_id):
    a = await create(client, project_id, task_name="A", sold_days=5)
    b = (await client.post(f"/api/tasks/{a['id']}/subtasks",
                           json={"task_name": "B", "sold_days": 2, "status": "done"})).json()
    c = (await client.post(f"/api/tasks/{a['id']}/subtasks",
                           json={"task_name": "C", "sold_days": 3})).json()

    stats = (await client.get(f"/api/tasks/{a['id']}/stats")).json()
    assert stats["total_sold_days"] == 10
    assert stats["is_complete_with_subtasks"] is False
    assert stats["completion_percentage"] == 50.0
    assert stats["subtask_count"] == 2

    await client.put(f"/api/tasks/{c['id']}", json={"status": "done"})
    await client.put(f"/api/tasks/{a['id']}", json={"status": "done"})
    stats = (await client.get(f"/api/tasks/{a['id']}/stats")).json()
    assert stats["is_complete_with_subtasks"] is True
    assert stats["completion_percentage"] == 100.0

    response = await client.delete(f"/api/tasks/{b['id']}")
    assert response.status_code == 200
    assert response.json()["deleted_ids"] == [b["id"]]

    assert (await client.get(f"/api/tasks/{b['id']}")).status_code == 404
    assert (await client.get(f"/api/tasks/{c['id']}")).status_code == 200
    stats = (await client.get(f"/api/tasks/{a['id']}/stats")).json()
    assert stats["total_sold_days"] == 8


async def test_delete_cascades_over_http(client, project_id):
    root = await create(client, project_id, task_name="Root")
    child = await create(client, project_id, task_name="Child", parent_task_id=root["id"])
    leaf = await create(client, project_id, task_name="Leaf", parent_task_id=child["id"])

    response = await client.delete(f"/api/tasks/{root['id']}")

    assert response.status_code == 200
    assert response.json()["deleted_ids"] == sorted([root["id"], child["id"], leaf["id"]])
    remaining = (await client.get(f"/api/projects/{project_id}/tasks")).json()
    assert remaining == []


async def test_ancestors_hierarchy_and_tree(client, project_id):
    root = await create(client, project_id, task_name="Root")
    child = await create(client, project_id, task_name="Child", parent_task_id=root["id"], sold_days=1)
    leaf = await create(client, project_id, task_name="Leaf", parent_task_id=child["id"], sold_days=2)

    ancestors = (await client.get(f"/api/tasks/{leaf['id']}/ancestors")).json()
    assert [a["id"] for a in ancestors] == [child["id"], root["id"]]
    assert [a["level"] for a in ancestors] == [1, 2]
    assert (await client.get(f"/api/tasks/{root['id']}/ancestors")).json() == []

    hierarchy = (await client.get(f"/api/tasks/{root['id']}/hierarchy")).json()
    assert [(n["id"], n["level"]) for n in hierarchy] == [(root["id"], 0), (child["id"], 1), (leaf["id"], 2)]
    assert hierarchy[-1]["path"] == "Root > Child > Leaf"
    assert (await client.get(f"/api/tasks/{root['id']}/hierarchy")).json() == hierarchy

    tree = (await client.get(f"/api/tasks/{root['id']}/tree")).json()
    assert tree["total_sold_days"] == 3
    assert tree["subtasks"][0]["subtasks"][0]["task_name"] == "Leaf"


async def test_update_moves_task_between_stages(client, project_id, stage_id):
    second = (await client.post(f"/api/projects/{project_id}/stages", json={"stage_name": "Build"})).json()
    task = await create(client, project_id, task_name="Requirements", stage_id=stage_id)
    await create(client, project_id, task_name="Prototype", stage_id=second["id"])

    response = await client.put(f"/api/tasks/{task['id']}", json={"stage_id": second["id"]})

    assert response.status_code == 200
    assert response.json()["stage_id"] == second["id"]
    assert response.json()["display_order"] == 1


async def test_update_rejects_cycle_and_null_name(client, project_id):
    root = await create(client, project_id, task_name="Root")
    child = await create(client, project_id, task_name="Child", parent_task_id=root["id"])

    response = await client.put(f"/api/tasks/{root['id']}", json={"parent_task_id": child["id"]})
    assert response.status_code == 400

    response = await client.put(f"/api/tasks/{root['id']}", json={"task_name": None})
    assert response.status_code == 400


async def test_reorder_endpoints(client, project_id, stage_id):
    parent = await create(client, project_id, task_name="Parent")
    a = await create(client, project_id, task_name="a", parent_task_id=parent["id"])
    b = await create(client, project_id, task_name="b", parent_task_id=parent["id"])
    c = await create(client, project_id, task_name="c", parent_task_id=parent["id"])
    s1 = await create(client, project_id, task_name="s1", stage_id=stage_id)
    s2 = await create(client, project_id, task_name="s2", stage_id=stage_id)

    response = await client.put(f"/api/tasks/{parent['id']}/subtasks/reorder",
                                json={"ids": [b["id"], a["id"], c["id"]]})
    assert response.status_code == 200
    assert response.json()["ids"] == [b["id"], a["id"], c["id"]]

    tree = (await client.get(f"/api/tasks/{parent['id']}/tree")).json()
    assert [t["id"] for t in tree["subtasks"]] == [b["id"], a["id"], c["id"]]

    response = await client.put(f"/api/stages/{stage_id}/tasks/reorder", json={"ids": [s2["id"], s1["id"]]})
    assert response.status_code == 200

    response = await client.put(f"/api/projects/{project_id}/tasks/reorder", json={"ids": [parent["id"]]})
    assert response.status_code == 200

    response = await client.put(f"/api/stages/{stage_id}/tasks/reorder", json={"ids": [a["id"]]})
    assert response.status_code == 409

    tasks = (await client.get(f"/api/projects/{project_id}/tasks",
                              params={"stage_id": stage_id, "main_only": True})).json()
    assert [t["id"] for t in tasks] == [s2["id"], s1["id"]]


async def test_filter_project_tasks(client, project_id):
    await create(client, project_id, task_name="Urgent", priority="urgent", due_date="2025-01-10")
    await create(client, project_id, task_name="Later", priority="low", due_date="2025-06-10")

    tasks = (await client.get(f"/api/projects/{project_id}/tasks", params={"priority": "urgent"})).json()
    assert [t["task_name"] for t in tasks] == ["Urgent"]

    tasks = (await client.get(f"/api/projects/{project_id}/tasks",
                              params={"due_after": "2025-03-01"})).json()
    assert [t["task_name"] for t in tasks] == ["Later"]

    response = await client.get(f"/api/projects/{project_id}/tasks", params={"due_before": "soon"})
    assert response.status_code == 400


async def test_project_plan_and_task_stats(client, project_id, stage_id):
    main = await create(client, project_id, task_name="Main", stage_id=stage_id, sold_days=1)
    await create(client, project_id, task_name="Sub", parent_task_id=main["id"], sold_days=2,
                 start_date="2025-02-01", due_date="2025-02-05")
    loose = await create(client, project_id, task_name="Loose")

    plan = (await client.get(f"/api/projects/{project_id}/plan")).json()
    assert plan["project"]["id"] == project_id
    assert plan["stages"][0]["task_count"] == 1
    main_tree = plan["stages"][0]["tasks"][0]
    assert main_tree["total_sold_days"] == 3
    assert main_tree["range_start"] == "2025-02-01"
    assert main_tree["range_end"] == "2025-02-05"
    assert [t["id"] for t in plan["unstaged_tasks"]] == [loose["id"]]

    stats = (await client.get(f"/api/projects/{project_id}/task-stats")).json()
    by_id = {s["id"]: s for s in stats}
    assert set(by_id) == {main["id"], loose["id"]}
    assert by_id[main["id"]]["total_subtasks"] == 1
    assert by_id[main["id"]]["completion_percentage"] == 0.0
    assert by_id[loose["id"]]["completion_percentage"] is None


async def test_stage_reorder_endpoint(client, project_id, stage_id):
    build = (await client.post(f"/api/projects/{project_id}/stages", json={"stage_name": "Build"})).json()

    response = await client.put(f"/api/projects/{project_id}/stages/reorder",
                                json={"ids": [build["id"], stage_id]})
    assert response.status_code == 200

    stages = (await client.get(f"/api/projects/{project_id}/stages")).json()
    assert [(s["id"], s["stage_order"]) for s in stages] == [(build["id"], 0), (stage_id, 1)]


async def test_clients_and_projects(client):
    response = await client.post("/api/clients", json={"client_name": "Acme", "country": "FR"})
    assert response.status_code == 201
    client_id = response.json()["id"]

    response = await client.post("/api/projects", json={"project_name": "Acme site", "client_id": client_id})
    assert response.status_code == 201
    assert response.json()["client_id"] == client_id

    response = await client.post("/api/projects", json={"project_name": "Ghost", "client_id": 999})
    assert response.status_code == 404

    projects = (await client.get("/api/projects")).json()
    assert [p["project_name"] for p in projects] == ["Acme site"]
    assert [c["client_name"] for c in (await client.get("/api/clients")).json()] == ["Acme"]


@pytest.mark.parametrize("raw_days", ["Infinity", "-Infinity", "NaN"])
async def test_create_task_rejects_non_finite_days(client, project_id, raw_days):
    response = await client.post(
        f"/api/projects/{project_id}/tasks",
        content=f'{{"task_name": "Endless", "sold_days": {raw_days}}}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert (await client.get(f"/api/projects/{project_id}/tasks")).json() == []


async def test_update_rejects_out_of_range_days(client, project_id):
    task = await create(client, project_id, task_name="Estimate", sold_days=2.5)

    response = await client.put(f"/api/tasks/{task['id']}", json={"sold_days": 1e12})
    assert response.status_code == 400

    response = await client.put(f"/api/tasks/{task['id']}", json={"sold_days": 12.75})
    assert response.status_code == 200
    assert response.json()["sold_days"] == 12.75


async def test_unknown_responsible_returns_404(client, project_id):
    response = await client.post(f"/api/projects/{project_id}/tasks",
                                 json={"task_name": "Unowned", "responsible_id": 999})
    assert response.status_code == 404
    assert response.json()["detail"] == "User 999 not found"


async def test_failed_delete_returns_500_and_keeps_subtree(client, project_id, monkeypatch):
    root = await create(client, project_id, task_name="Root")
    child = await create(client, project_id, task_name="Child", parent_task_id=root["id"])

    async def failing_commit(self):
        await self.flush()
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    with monkeypatch.context() as patched:
        patched.setattr(AsyncSession, "commit", failing_commit)
        response = await client.delete(f"/api/tasks/{root['id']}")

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to delete task"
    hierarchy = (await client.get(f"/api/tasks/{root['id']}/hierarchy")).json()
    assert [n["id"] for n in hierarchy] == [root["id"], child["id"]]


async def test_update_and_delete_stage_endpoints(client, project_id, stage_id):
    response = await client.put(f"/api/stages/{stage_id}", json={"stage_name": "Discovery", "is_completed": True})
    assert response.status_code == 200
    assert response.json()["stage_name"] == "Discovery"
    assert response.json()["is_completed"] is True

    assert (await client.put(f"/api/stages/{stage_id}", json={"stage_name": None})).status_code == 400
    assert (await client.put("/api/stages/999", json={"stage_name": "x"})).status_code == 404

    task = await create(client, project_id, task_name="Workshop", stage_id=stage_id)
    response = await client.delete(f"/api/stages/{stage_id}")
    assert response.status_code == 409

    await client.delete(f"/api/tasks/{task['id']}")
    response = await client.delete(f"/api/stages/{stage_id}")
    assert response.status_code == 200
    assert (await client.get(f"/api/stages/{stage_id}")).status_code == 404
    assert (await client.get(f"/api/projects/{project_id}/stages")).json() == []
