"""Wire model base — camelCase on the wire, snake_case in Python."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """
    Base for every model exchanged with the proposal step, the composition
    workflow or the HTTP API. Accepts either field-name style on input;
    dump with ``by_alias=True`` to produce camelCase.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
