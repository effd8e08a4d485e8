"""
Text-generation model catalogue and key lookup.
"""

import logging
from typing import Optional

from feedscribe.core.constants import CUSTOM_MODEL_ID, DEFAULT_AI_MODEL
from feedscribe.core.error_codes import ConfigurationError
from feedscribe.core.models import AIModel, OptimizationTarget

logger = logging.getLogger(__name__)

AI_MODELS: list[AIModel] = [
    AIModel('deepseek-chat', 'DeepSeek Chat', 'DeepSeek',
            'https://api.deepseek.com/chat/completions'),
    AIModel('deepseek-reasoner', 'DeepSeek R1', 'DeepSeek',
            'https://api.deepseek.com/chat/completions'),
    AIModel('glm-4.5', 'GLM-4.5', 'Zhipu',
            'https://open.bigmodel.cn/api/paas/v4/chat/completions'),
    AIModel('qwen3-max', 'Qwen3 Max', 'Qwen',
            'https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions'),
    AIModel('qwen-plus', 'Qwen Plus', 'Qwen',
            'https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions'),
    AIModel('gemini-2.5-flash', 'Gemini 2.5 Flash', 'Google',
            'https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent'),
    AIModel('gemini-2.5-pro', 'Gemini 2.5 Pro', 'Google',
            'https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-pro:generateContent'),
    AIModel(CUSTOM_MODEL_ID, 'Custom model', 'Custom', ''),
]

_CUSTOM_FALLBACK_NAME = 'custom-model'


def find_model(model_id: str) -> Optional[AIModel]:
    for model in AI_MODELS:
        if model.id == model_id:
            return model
    return None


class ModelRegistry:
    """Resolves the configured model and its key into an OptimizationTarget."""

    def __init__(self, config, models: Optional[list[AIModel]] = None):
        self.config = config
        self.models = list(models) if models is not None else list(AI_MODELS)

    def get_api_key_for(self, model_id: str) -> Optional[str]:
        key = self.config.ai_api_key(model_id)
        return key or None

    def get_model(self, model_id: str) -> Optional[AIModel]:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def resolve_selected(self) -> OptimizationTarget:
        """
        Model + key for the configured `ai_model`.
        Raises ConfigurationError when no key is set, or when the custom
        model has no base URL.
        """
        model_id = self.config.get('ai_model') or DEFAULT_AI_MODEL
        api_key = self.get_api_key_for(model_id)
        if not api_key:
            raise ConfigurationError(f"No API key configured for model '{model_id}'")

        if model_id == CUSTOM_MODEL_ID:
            base_url = self.config.get('ai_base_url')
            if not base_url:
                raise ConfigurationError("Custom model selected but ai_base_url is not set")
            model = AIModel(
                id=self.config.get('ai_custom_model') or _CUSTOM_FALLBACK_NAME,
                name='Custom model',
                provider='Custom',
                api_url=base_url,
            )
            return OptimizationTarget(model=model, api_key=api_key)

        model = self.get_model(model_id)
        if model is None:
            logger.warning("Unknown model '%s' — falling back to %s", model_id, self.models[0].id)
            model = self.models[0]
        return OptimizationTarget(model=model, api_key=api_key)
