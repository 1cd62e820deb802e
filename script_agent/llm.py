"""模型接口：统一的聊天调用与 JSON 提取"""

import json
import logging
from typing import Any, Dict, List, Protocol

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class ChatModel(Protocol):
    """聊天模型：输入消息列表，返回文本"""

    async def chat(self, messages: List[Message]) -> str: ...


class OpenAIChatModel:
    """基于 OpenAI 兼容接口的聊天模型（base_url 可切换到其他兼容服务）"""

    def __init__(self, client: AsyncOpenAI, model: str, temperature: float = 0, json_mode: bool = True):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.json_mode = json_mode

    async def chat(self, messages: List[Message]) -> str:
        kwargs: Dict[str, Any] = {}
        if self.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            messages=messages,
            **kwargs,
        )
        content = response.choices[0].message.content or ""
        logger.debug("模型返回 %d 字符", len(content))
        return content


def extract_json_payload(text: str) -> Any:
    """从模型输出中取出第一个合法 JSON 对象或数组（容忍代码块与前后说明文字）"""
    decoder = json.JSONDecoder()
    for idx, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            obj, _end = decoder.raw_decode(text[idx:])
        except json.JSONDecodeError:
            continue
        if isinstance(obj, (dict, list)):
            return obj
    raise ValueError("No valid JSON found in model output")


def user_message(content: str) -> List[Message]:
    return [{"role": "user", "content": content}]
