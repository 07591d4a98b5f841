"""Declared resource specification."""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from kube_provisioner.resources.references import referenced_names

_INPUTS = TypeAdapter(dict[str, Any])


class ResourceSpec(BaseModel):
    """A declared resource: identity, input properties and explicit dependencies.

    Specs are pure data - they define the desired state. Handlers know how to
    apply and delete them.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    resource_type: str = Field(
        min_length=1, validation_alias=AliasChoices("type", "resource_type")
    )
    name: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
    inputs: dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    @field_validator("inputs")
    @classmethod
    def _json_inputs(cls, v: dict[str, Any]) -> dict[str, Any]:
        # YAML dates and timestamps become the ISO strings the state file holds.
        return _INPUTS.dump_python(v, mode="json")

    def references(self) -> list[str]:
        """Names of other resources whose outputs this one references."""
        return [n for n in referenced_names(self.inputs) if n != self.name]
