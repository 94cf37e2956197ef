"""Provider 与模型配置。

本模块将"逻辑模型名"与"具体厂商模型名"解耦：

- 逻辑名（logical_name）：在配置里使用的统一名称，例如 "chat"。
- provider_model：厂商实际提供的模型 ID，例如 "meta-llama/Llama-3.3-70B-Instruct-Turbo-Free"。

配置中的 model 若不是已登记的逻辑名，则原样作为厂商模型 ID 使用。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    @property
    def chat_endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"


TOGETHER_CONFIG = ProviderConfig(
    name="together",
    base_url="https://api.together.xyz/v1",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="meta-llama/Llama-3.3-70B-Instruct-Turbo-Free",
        )
    },
)

OPENROUTER_CONFIG = ProviderConfig(
    name="openrouter",
    base_url="https://openrouter.ai/api/v1",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="google/gemini-2.5-flash",
        )
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "together": TOGETHER_CONFIG,
    "openrouter": OPENROUTER_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def resolve_model(provider: str, model: str) -> str:
    """逻辑模型名 -> 厂商模型 ID。"""

    cfg = get_provider_config(provider)
    model_cfg = cfg.models.get(model)
    return model_cfg.provider_model if model_cfg else model
