"""Shared pydantic base for models exchanged with clients.

Python attributes stay snake_case; the JSON the file-attachment pipeline
sends and receives is camelCase (``uploadId``, ``totalChunks``, ...).
"""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Dump as a JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
