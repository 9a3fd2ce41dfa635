"""
Shared base for request/response models.

The browser client speaks camelCase (frameUrls, videoId); Python code
uses snake_case. CamelModel accepts and emits both.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )
