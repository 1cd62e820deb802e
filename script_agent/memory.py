"""记忆模块：代理模式下保存历史动作，用于去重与给 LLM 的上下文"""

from typing import List, Optional

from .models import MemoryRecord


class Memory:
    """记忆模块：保存历史步骤"""

    def __init__(self):
        self.history: List[MemoryRecord] = []
        self.failed_targets: List[str] = []
        self.step_counter = 0

    def record(self, action: str, target: Optional[str], result: str):
        """记录单步操作"""
        self.step_counter += 1
        self.history.append(MemoryRecord(
            step_num=self.step_counter,
            action=action,
            target=target,
            result=result,
        ))
        if result == "failed" and target is not None:
            self.failed_targets.append(target)

    def is_repeated_action(self, action: str, target: Optional[str], threshold: int = 3) -> bool:
        """判断最近 threshold 次是否都是同一个动作"""
        recent = self.history[-threshold:]
        if len(recent) < threshold:
            return False
        return all(r.action == action and r.target == target for r in recent)

    def format_history(self, last_n: int = 5) -> str:
        """格式化内存中的历史记录"""
        if not self.history:
            return "(无历史)"
        lines = []
        for rec in self.history[-last_n:]:
            target_str = f" ({rec.target})" if rec.target else ""
            lines.append(f"Step {rec.step_num}: {rec.action}{target_str} → {rec.result}")
        if self.failed_targets:
            # 去重，保持首次失败的顺序
            lines.append("已失败目标: " + ", ".join(dict.fromkeys(self.failed_targets)))
        return "\n".join(lines)
