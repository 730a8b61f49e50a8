from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    Base for every entity that crosses the HTTP boundary.
    Python code uses snake_case; JSON uses camelCase aliases.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
