"""
Execution API 集成测试

使用 Fake 沙箱提供方与内存存储运行完整应用（含 lifespan）
"""

from collections.abc import AsyncGenerator

from httpx import ASGITransport, AsyncClient
import pytest
import pytest_asyncio

from domains.execution.domain.types import CommandOutput

API = "/api/v1"


@pytest_asyncio.fixture
async def client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP 客户端 fixture"""
    # ASGITransport 不触发 lifespan，这里手动进入
    async with test_app.router.lifespan_context(test_app):
        async with AsyncClient(
            transport=ASGITransport(app=test_app),
            base_url="http://test",
        ) as ac:
            yield ac


def _plan_body(organization_id: str = "org-1") -> dict:
    return {
        "organization_id": organization_id,
        "plan": {
            "steps": [
                {
                    "id": "list",
                    "description": "List workspace",
                    "dependsOn": [],
                    "toolId": "shell_command",
                    "parameters": {"command": "echo hello"},
                },
                {
                    "id": "summarize",
                    "description": "Summarize the listing",
                    "dependsOn": ["list"],
                },
            ],
            "requiredTools": ["shell_command"],
        },
    }


@pytest.mark.integration
class TestExecutionAPI:
    """测试执行接口"""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """测试健康检查"""
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_execute_plan(self, client, fake_provider):
        """测试执行计划并读取执行记录"""
        fake_provider.default_behavior.command_outputs["echo hello"] = CommandOutput(
            stdout="hello", exit_code=0
        )

        response = await client.post(f"{API}/executions", json=_plan_body())

        assert response.status_code == 200
        data = response.json()
        assert data["result"]["success"] is True
        assert data["result"]["unresolvedSteps"] == ["summarize"]
        assert data["context"]["status"] == "completed"
        assert data["context"]["steps"]["list"]["result"] == {"output": "hello", "exit_code": 0}
        # 运行结束后沙箱被释放
        assert fake_provider.total_kills == 1

        execution_id = data["result"]["executionId"]
        response = await client.get(f"{API}/executions/{execution_id}")
        assert response.status_code == 200
        assert response.json()["id"] == execution_id

    @pytest.mark.asyncio
    async def test_invalid_plan_rejected(self, client):
        """测试非法依赖图返回 422"""
        body = _plan_body()
        body["plan"]["steps"][0]["dependsOn"] = ["summarize"]

        response = await client.post(f"{API}/executions", json=body)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_execution_not_found(self, client):
        """测试执行记录不存在"""
        response = await client.get(f"{API}/executions/unknown")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_recovery(self, client):
        """测试失败执行的恢复计划"""
        body = _plan_body()
        body["plan"]["steps"][0]["parameters"] = {"command": "rm -rf /"}
        response = await client.post(f"{API}/executions", json=body)
        result = response.json()["result"]
        assert result["success"] is False
        assert result["failedSteps"] == ["list"]

        response = await client.post(f"{API}/executions/{result['executionId']}/recovery")

        assert response.status_code == 200
        steps = response.json()["steps"]
        assert len(steps) == 1
        assert steps[0]["description"] == "Recovery for failed step list"

    @pytest.mark.asyncio
    async def test_recovery_not_found(self, client):
        """测试恢复不存在的执行"""
        response = await client.post(f"{API}/executions/unknown/recovery")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_sandbox_stats(self, client):
        """测试沙箱池统计"""
        response = await client.get(f"{API}/sandboxes/stats")

        assert response.status_code == 200
        assert response.json()["total_sandboxes"] == 0

    @pytest.mark.asyncio
    async def test_list_tools(self, client):
        """测试工具列表"""
        response = await client.get(f"{API}/tools")

        assert response.status_code == 200
        names = {tool["function"]["name"] for tool in response.json()["tools"]}
        assert {"browser_automation", "file_operations", "shell_command"} <= names
