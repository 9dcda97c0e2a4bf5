"""
Analysis step intermediate representation (IR).

Every service method returns an ``AnalysisStep`` next to its result so that a
run can be replayed as code: the step carries the operation name, the exact
parameters used, a Jinja2 code template, and a schema describing which
parameters may be injected by notebook tooling (papermill).
"""

import ast
import json
import sys
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError

_JINJA_ENV = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


@dataclass
class ParameterSpec:
    """
    Schema entry for a single analysis parameter.

    Attributes:
        param_type: Type annotation as a string (e.g. "int", "List[str]")
        papermill_injectable: Whether notebook tooling may override it
        default_value: JSON-serializable default
        required: Whether the caller must supply it
        validation_rule: Optional Python expression documenting valid values
        description: Human-readable description
    """

    param_type: str
    papermill_injectable: bool
    default_value: Any
    required: bool
    validation_rule: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        try:
            json.dumps(self.default_value)
        except TypeError as e:
            raise TypeError(
                f"default_value {self.default_value!r} is not JSON-serializable"
            ) from e
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterSpec":
        return cls(**data)


@dataclass
class AnalysisStep:
    """
    One reproducible analysis operation.

    Attributes:
        operation: Dotted operation id (e.g. "network.identify_modules")
        tool_name: Service method name
        description: What the step does
        library: Module that implements the step
        code_template: Jinja2 template that reproduces the call
        imports: Import lines the rendered code needs
        parameters: Parameter values used for this run
        parameter_schema: ParameterSpec per parameter
        input_entities: Names of objects consumed
        output_entities: Names of objects produced
        execution_context: Free-form run metadata (library versions, ...)
    """

    operation: str
    tool_name: str
    description: str
    library: str
    code_template: str
    imports: List[str]
    parameters: Dict[str, Any]
    parameter_schema: Dict[str, ParameterSpec]
    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)
    execution_context: Dict[str, Any] = field(default_factory=dict)
    validates_on_export: bool = True
    requires_validation: bool = False

    _REQUIRED_FIELDS = (
        "operation",
        "tool_name",
        "description",
        "library",
        "code_template",
        "imports",
        "parameters",
        "parameter_schema",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "tool_name": self.tool_name,
            "description": self.description,
            "library": self.library,
            "code_template": self.code_template,
            "imports": list(self.imports),
            "parameters": dict(self.parameters),
            "parameter_schema": {
                name: spec.to_dict() for name, spec in self.parameter_schema.items()
            },
            "input_entities": list(self.input_entities),
            "output_entities": list(self.output_entities),
            "execution_context": dict(self.execution_context),
            "validates_on_export": self.validates_on_export,
            "requires_validation": self.requires_validation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        missing = [f for f in cls._REQUIRED_FIELDS if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")

        schema = {
            name: spec if isinstance(spec, ParameterSpec) else ParameterSpec.from_dict(spec)
            for name, spec in data["parameter_schema"].items()
        }
        return cls(
            operation=data["operation"],
            tool_name=data["tool_name"],
            description=data["description"],
            library=data["library"],
            code_template=data["code_template"],
            imports=list(data["imports"]),
            parameters=dict(data["parameters"]),
            parameter_schema=schema,
            input_entities=list(data.get("input_entities", [])),
            output_entities=list(data.get("output_entities", [])),
            execution_context=dict(data.get("execution_context", {})),
            validates_on_export=data.get("validates_on_export", True),
            requires_validation=data.get("requires_validation", False),
        )

    def validate_template(self) -> bool:
        """Check that ``code_template`` parses as a Jinja2 template."""
        try:
            _JINJA_ENV.parse(self.code_template)
        except TemplateSyntaxError as e:
            raise ValueError(f"Invalid Jinja2 template: {e}") from e
        return True

    def render(self, **overrides: Any) -> str:
        """Render the code template with the recorded parameters."""
        context = {**self.parameters, **overrides}
        try:
            return _JINJA_ENV.from_string(self.code_template).render(**context)
        except Exception as e:
            raise ValueError(f"Template rendering failed: {e}") from e

    def validate_rendered_code(self) -> bool:
        """Check that the rendered code is valid Python syntax."""
        ast.parse(self.render())
        return True

    def get_papermill_parameters(self) -> Dict[str, Any]:
        return {
            name: self.parameters[name]
            for name, spec in self.parameter_schema.items()
            if spec.papermill_injectable and name in self.parameters
        }

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation!r}, tool_name={self.tool_name!r}, "
            f"n_parameters={len(self.parameters)})"
        )


def _import_group(line: str) -> int:
    module = line.split()[1].split(".")[0]
    if module in sys.stdlib_module_names:
        return 0
    if module == "omicsnet":
        return 2
    return 1


def extract_unique_imports(
    steps: List[AnalysisStep], extra: Optional[List[str]] = None
) -> List[str]:
    """
    Collect the imports of several steps (plus ``extra`` lines), deduplicated
    and ordered stdlib, then third-party, then omicsnet.
    """
    seen: Dict[str, None] = {}
    for step in steps:
        for line in step.imports:
            seen.setdefault(line.strip(), None)
    for line in extra or []:
        seen.setdefault(line.strip(), None)
    return sorted(seen, key=lambda line: (_import_group(line), line))
