from typing import Any, Mapping, Optional

class BaseEngine:
    def update(self, user_id: str, observation: Optional[Mapping[Any, Any]]) -> Any:
        raise NotImplementedError
