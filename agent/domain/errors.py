from typing import Any, Iterable, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

M = TypeVar("M", bound=BaseModel)


class NovaError(Exception):
    """Base class for runtime errors"""


class ConfigurationError(NovaError):
    """Invalid wiring detected while constructing an engine, store or manager"""

    def __init__(self, message: str, managers: Optional[Iterable[str]] = None):
        self.managers = list(managers or [])
        if self.managers:
            message = f"{message}: {', '.join(self.managers)}"
        super().__init__(message)


class ValidationError(NovaError):
    """A store operation or filter was rejected; nothing was written"""


class NotFoundError(ValidationError):
    """A referenced actor or session does not exist"""


class PipelineError(NovaError):
    """A manager hook failed while processing a turn"""

    def __init__(self, message: str, manager_id: Optional[str] = None, hook: Optional[str] = None):
        self.manager_id = manager_id
        self.hook = hook
        super().__init__(message)


class PostProcessError(NovaError):
    """A manager failed after the response was delivered"""

    def __init__(self, message: str, manager_id: str):
        self.manager_id = manager_id
        super().__init__(message)


class TransportError(NovaError):
    """Model provider or storage backend failure"""


class StateTransitionError(NovaError):
    """A turn state was driven out of order"""


def load_config(model_cls: Type[M], values: Union[M, Mapping[str, Any]]) -> M:
    """Validate a config mapping into ``model_cls``, raising ConfigurationError"""

    if isinstance(values, model_cls):
        return values
    try:
        return model_cls.model_validate(values)
    except PydanticValidationError as e:
        raise ConfigurationError(f"invalid {model_cls.__name__}: {e}") from e
