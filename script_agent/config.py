"""配置：从 .env / 环境变量读取，按执行模式给出默认执行参数"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from dotenv import load_dotenv

from .models import ExecutionMode

logger = logging.getLogger(__name__)

# 常见 APP 包名
DEFAULT_APP_PACKAGES = {
    "小红书": "com.xingin.xhs",
    "抖音": "com.ss.android.ugc.aweme",
    "微信": "com.tencent.mm",
    "淘宝": "com.taobao.taobao",
    "京东": "com.jingdong.app.mall",
}


@dataclass(frozen=True)
class ExecutionConfig:
    """单次执行的参数，随执行模式变化"""
    mode: ExecutionMode = ExecutionMode.SMART
    popup_dismiss_enabled: bool = True
    ai_recovery_enabled: bool = True
    ai_verify_threshold: float = 0.8
    step_delay_s: float = 0.5
    retry_delay_s: float = 1.0
    popup_dismiss_delay_s: float = 0.3
    popup_max_attempts: int = 3
    action_delay_s: float = 1.0  # 手势后的等待
    landing_delay_s: float = 2.0  # 点击进入详情后的等待
    monitor_promote_after: int = 2
    agent_max_iterations: int = 30
    goal_timeout_s: float = 600.0
    max_step_executions: int = 200

    @classmethod
    def for_mode(cls, mode: ExecutionMode, **overrides) -> "ExecutionConfig":
        if mode is ExecutionMode.FAST:
            base = cls(mode=mode, popup_dismiss_enabled=False, ai_recovery_enabled=False, step_delay_s=0.3)
        elif mode is ExecutionMode.MONITOR:
            base = cls(mode=mode, step_delay_s=0.8)
        elif mode is ExecutionMode.AGENT:
            base = cls(mode=mode, step_delay_s=1.0)
        else:
            base = cls(mode=mode)
        return replace(base, **overrides) if overrides else base

    def without_delays(self) -> "ExecutionConfig":
        return replace(self, step_delay_s=0, retry_delay_s=0, popup_dismiss_delay_s=0,
                       action_delay_s=0, landing_delay_s=0)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("⚠ 环境变量 %s=%r 不是数字，使用默认值 %s", name, value, default)
        return default


def _env_json_map(name: str) -> Dict[str, str]:
    value = os.getenv(name)
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("⚠ 环境变量 %s 不是合法 JSON，已忽略", name)
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


@dataclass(frozen=True)
class AgentConfig:
    """全局配置"""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: str = "gpt-4o"
    scripts_dir: str = "scripts"
    default_mode: ExecutionMode = ExecutionMode.SMART
    auto_adjust: bool = True
    max_improve_cycles: int = 3
    agent_max_iterations: int = 30
    goal_timeout_s: float = 600.0
    max_step_executions: int = 200
    step_delay_scale: float = 1.0
    auto_grant_permissions: bool = False
    capture_screenshots: bool = False
    headless: bool = False
    log_level: str = "INFO"
    app_urls: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "AgentConfig":
        # 加载 .env 文件中的环境变量
        load_dotenv(dotenv_path)
        return cls(
            api_key=os.getenv("OPENAI_API_KEY"),
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            scripts_dir=os.getenv("SCRIPT_AGENT_SCRIPTS_DIR", "scripts"),
            default_mode=ExecutionMode.from_name(os.getenv("SCRIPT_AGENT_MODE", "smart")),
            auto_adjust=_env_bool("SCRIPT_AGENT_AUTO_ADJUST", True),
            max_improve_cycles=int(_env_float("SCRIPT_AGENT_MAX_IMPROVE", 3)),
            agent_max_iterations=int(_env_float("SCRIPT_AGENT_AGENT_MAX_ITERATIONS", 30)),
            goal_timeout_s=_env_float("SCRIPT_AGENT_GOAL_TIMEOUT", 600.0),
            max_step_executions=int(_env_float("SCRIPT_AGENT_MAX_STEPS", 200)),
            step_delay_scale=_env_float("SCRIPT_AGENT_DELAY_SCALE", 1.0),
            auto_grant_permissions=_env_bool("SCRIPT_AGENT_AUTO_GRANT", False),
            capture_screenshots=_env_bool("SCRIPT_AGENT_SCREENSHOTS", False),
            headless=_env_bool("SCRIPT_AGENT_HEADLESS", False),
            log_level=os.getenv("SCRIPT_AGENT_LOG_LEVEL", "INFO"),
            app_urls=_env_json_map("SCRIPT_AGENT_APPS"),
        )

    def execution_config(self, mode: ExecutionMode) -> ExecutionConfig:
        """按模式生成执行参数，并套用全局上限与延迟缩放"""
        base = ExecutionConfig.for_mode(mode)
        scale = max(self.step_delay_scale, 0.0)
        return replace(
            base,
            agent_max_iterations=self.agent_max_iterations,
            goal_timeout_s=self.goal_timeout_s,
            max_step_executions=self.max_step_executions,
            step_delay_s=base.step_delay_s * scale,
            retry_delay_s=base.retry_delay_s * scale,
            popup_dismiss_delay_s=base.popup_dismiss_delay_s * scale,
            action_delay_s=base.action_delay_s * scale,
            landing_delay_s=base.landing_delay_s * scale,
        )
