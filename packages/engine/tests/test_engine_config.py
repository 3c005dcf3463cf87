"""EngineConfig 环境变量加载测试"""

from agentmesh.engine.config import EngineConfig, load_engine_config


class TestLoadEngineConfig:
    def test_defaults(self, monkeypatch):
        for name in (
            "AGENTMESH_MAX_TRANSFERS",
            "AGENTMESH_MAX_STEPS",
            "AGENTMESH_MAX_DELEGATION_DEPTH",
        ):
            monkeypatch.delenv(name, raising=False)
        config = load_engine_config()
        assert config == EngineConfig()
        assert config.max_transfers == 10
        assert config.max_delegation_depth == 5

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("AGENTMESH_MAX_TRANSFERS", "3")
        monkeypatch.setenv("AGENTMESH_TOOL_HEALTH_TTL_S", "2.5")
        config = load_engine_config()
        assert config.max_transfers == 3
        assert config.tool_health_ttl_s == 2.5

    def test_invalid_value_falls_back(self, monkeypatch):
        """非法值回退默认值，不阻塞启动"""
        monkeypatch.setenv("AGENTMESH_MAX_STEPS", "lots")
        monkeypatch.setenv("AGENTMESH_MAX_DELEGATION_DEPTH", "-1")
        config = load_engine_config()
        assert config.max_steps == 20
        assert config.max_delegation_depth == 5
