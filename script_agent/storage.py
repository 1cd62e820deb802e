"""脚本持久化：每个脚本一个 JSON 文件，外加内存缓存"""

import json
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional

from .errors import ScriptNotFound
from .models import Script
from .step_params import step_from_dict, step_to_dict

logger = logging.getLogger(__name__)


def new_script_id() -> str:
    return f"script_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def script_to_dict(script: Script) -> Dict[str, Any]:
    return {
        "id": script.id,
        "name": script.name,
        "goal": script.goal,
        "version": script.version,
        "steps": [step_to_dict(s) for s in script.steps],
        "outputs": list(script.outputs),
        "success_count": script.success_count,
        "fail_count": script.fail_count,
        "created_at": script.created_at,
        "last_executed_at": script.last_executed_at,
    }


def script_from_dict(data: Mapping[str, Any]) -> Script:
    steps = data.get("steps") or []
    return Script(
        id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        goal=str(data.get("goal") or ""),
        steps=tuple(step_from_dict(raw, i + 1) for i, raw in enumerate(steps) if isinstance(raw, Mapping)),
        version=int(data.get("version") or 1),
        outputs=tuple(str(o) for o in data.get("outputs") or ()),
        success_count=int(data.get("success_count") or 0),
        fail_count=int(data.get("fail_count") or 0),
        created_at=float(data.get("created_at") or time.time()),
        last_executed_at=data.get("last_executed_at"),
    )


class ScriptStore:
    """脚本仓库"""

    def __init__(self, directory: str):
        self.directory = directory
        self._cache: Dict[str, Script] = {}
        os.makedirs(directory, exist_ok=True)

    def _path(self, script_id: str) -> str:
        return os.path.join(self.directory, f"{script_id}.json")

    def save(self, script: Script) -> None:
        path = self._path(script.id)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(script_to_dict(script), f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
        self._cache[script.id] = script
        logger.debug("💾 保存脚本 %s v%s", script.id, script.version)

    def load(self, script_id: str) -> Script:
        cached = self._cache.get(script_id)
        if cached is not None:
            return cached
        path = self._path(script_id)
        if not os.path.exists(path):
            raise ScriptNotFound(script_id)
        with open(path, encoding="utf-8") as f:
            script = script_from_dict(json.load(f))
        self._cache[script_id] = script
        return script

    def get(self, script_id: str) -> Optional[Script]:
        try:
            return self.load(script_id)
        except ScriptNotFound:
            return None

    def list(self) -> List[Script]:
        scripts = []
        for filename in sorted(os.listdir(self.directory)):
            if not filename.endswith(".json"):
                continue
            script_id = filename[:-len(".json")]
            try:
                scripts.append(self.load(script_id))
            except (ValueError, KeyError) as e:
                logger.warning("⚠ 跳过损坏的脚本文件 %s: %s", filename, e)
        return sorted(scripts, key=lambda s: s.created_at, reverse=True)

    def delete(self, script_id: str) -> bool:
        self._cache.pop(script_id, None)
        path = self._path(script_id)
        if not os.path.exists(path):
            return False
        os.remove(path)
        return True
