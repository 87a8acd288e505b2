class SubgateError(Exception):
    """Базовая ошибка проекта."""


class ConfigError(SubgateError):
    """Не хватает обязательных настроек. Бросается только при старте."""


class GatewayError(SubgateError):
    """Платёжный шлюз вернул ошибку или недоступен."""

    def __init__(self, message: str, http_status: int | None = None):
        super().__init__(message)
        self.http_status = http_status


class UnknownPlanError(SubgateError):
    pass
