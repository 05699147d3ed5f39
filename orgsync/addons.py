"""Add-on modules hooked into the migration lifecycle."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .constants import ID_FIELD_NAME, INTERNAL_ID_FIELD_NAME
from .errors import AbortedByAddonError, ExpressionError, InitializationError
from .models.record import Record
from .models.script import AddonDeclaration, Script, ScriptObject
from .services.expression import ExpressionEvaluator

if TYPE_CHECKING:
    from .job import MigrationJob

logger = logging.getLogger(__name__)


class AddonEvent(str, Enum):
    """Lifecycle events add-ons can subscribe to."""
    ON_BEFORE = "onBefore"
    ON_AFTER = "onAfter"
    ON_BEFORE_UPDATE = "onBeforeUpdate"
    ON_AFTER_UPDATE = "onAfterUpdate"
    FILTER_RECORDS = "filterRecordsAddons"


EVENT_DECLARATIONS = {
    AddonEvent.ON_BEFORE: "before_addons",
    AddonEvent.ON_AFTER: "after_addons",
    AddonEvent.ON_BEFORE_UPDATE: "before_update_addons",
    AddonEvent.ON_AFTER_UPDATE: "after_update_addons",
    AddonEvent.FILTER_RECORDS: "filter_records_addons",
}


@dataclass
class AddonContext:
    """What an add-on sees when it runs."""
    event: AddonEvent
    object_name: str
    args: Dict[str, Any] = field(default_factory=dict)
    simulation_mode: bool = False
    description: str = ""
    pass_number: int = 0
    is_first_pass: bool = True
    job: Optional["MigrationJob"] = None


class AddonModule(ABC):
    """
    Base class for add-on modules.

    ``run`` receives the records of the event and returns the records the
    job should continue with, or None to keep them unchanged. Raising
    AbortedByAddonError stops the job.
    """

    def __init__(self, args: Optional[Dict[str, Any]] = None):
        self.args = args or {}

    @abstractmethod
    def run(self, context: AddonContext, records: List[Record]) -> Optional[List[Record]]:
        """Process the records of an event."""
        pass


class RecordsFilterAddon(AddonModule):
    """Keeps the records matching the ``expression`` argument."""

    def __init__(self, args: Optional[Dict[str, Any]] = None):
        super().__init__(args)
        expression = self.args.get("expression")
        if not expression:
            raise InitializationError("RecordsFilter add-on requires an 'expression' argument")
        try:
            self._compiled = ExpressionEvaluator().compile(expression)
        except ExpressionError as e:
            raise InitializationError(f"RecordsFilter add-on: {e}") from e

    def run(self, context: AddonContext, records: List[Record]) -> Optional[List[Record]]:
        return [record for record in records if self._compiled.evaluate(record)]


class FieldValuesAddon(AddonModule):
    """Sets constant values on fields listed in the ``fields`` argument."""

    def run(self, context: AddonContext, records: List[Record]) -> Optional[List[Record]]:
        values = self.args.get("fields") or {}
        for record in records:
            record.update(values)
        return records


class AbortAddon(AddonModule):
    """Stops the job, with the ``message`` argument as the reason."""

    def run(self, context: AddonContext, records: List[Record]) -> Optional[List[Record]]:
        raise AbortedByAddonError(self.args.get("message") or f"Aborted by add-on on {context.object_name}")


class RecordsTransformAddon(AddonModule):
    """
    Computes field values from fields of the same record or of related records.

    Arguments:
        fields: Named inputs. Each entry has an ``alias`` and either a
            ``constantValue`` (with ``isConstant``) or a ``sourceObject`` and
            ``sourceField``. Inputs from another object are read from the
            parent record the lookup points to, or from the first child record
            pointing back. ``lookupExpression`` selects the related record
            instead; it sees the candidate's fields and the current record's
            fields prefixed with ``RECORD.``. ``lookupSource`` picks the
            source (default) or target records of the related object.
        transformations: Outputs. Each entry has a ``targetField`` and a
            ``formula`` over the aliases; ``targetObject`` limits it to one
            object.

    The target field must be part of the object's query to be written.
    """

    SUPPORTED_EVENTS = (AddonEvent.ON_BEFORE, AddonEvent.ON_BEFORE_UPDATE)

    def __init__(self, args: Optional[Dict[str, Any]] = None):
        super().__init__(args)
        self.fields = list(self.args.get("fields") or [])
        self.transformations = list(self.args.get("transformations") or [])
        if not self.transformations:
            raise InitializationError("RecordsTransform add-on requires 'transformations'")

        evaluator = ExpressionEvaluator()
        self._formulas = []
        self._lookups: Dict[str, Any] = {}
        try:
            for transformation in self.transformations:
                if not transformation.get("targetField") or not transformation.get("formula"):
                    raise InitializationError("RecordsTransform transformations need 'targetField' and 'formula'")
                self._formulas.append((transformation, evaluator.compile(transformation["formula"])))
            for spec in self.fields:
                if not spec.get("alias"):
                    raise InitializationError("RecordsTransform fields need an 'alias'")
                if spec.get("lookupExpression"):
                    self._lookups[spec["alias"]] = evaluator.compile(spec["lookupExpression"])
        except ExpressionError as e:
            raise InitializationError(f"RecordsTransform add-on: {e}") from e

    def run(self, context: AddonContext, records: List[Record]) -> Optional[List[Record]]:
        if context.event not in self.SUPPORTED_EVENTS:
            logger.warning(f"{context.object_name}: RecordsTransform does not run on {context.event.value}")
            return None
        formulas = [
            (t, compiled) for t, compiled in self._formulas
            if t.get("targetObject") in (None, "", context.object_name)
        ]
        if not formulas:
            return None

        task = context.job.get_task(context.object_name) if context.job else None
        transformed = 0
        for record in records:
            base = record
            if task is not None and context.event == AddonEvent.ON_BEFORE_UPDATE:
                base = task.source_data.id_records_map.get(record.get(INTERNAL_ID_FIELD_NAME)) or record
            variables = dict(base)
            variables.update(record)
            for spec in self.fields:
                variables[spec["alias"]] = self._field_value(context, task, spec, record, base)
            for transformation, compiled in formulas:
                record[transformation["targetField"]] = compiled.evaluate(variables)
            transformed += 1
        logger.debug(f"{context.object_name}: RecordsTransform updated {transformed} records")
        return records

    def _field_value(self, context: AddonContext, task, spec: Dict[str, Any], record: Record, base: Record) -> Any:
        if spec.get("isConstant"):
            return spec.get("constantValue")
        source_object = spec.get("sourceObject")
        source_field = spec.get("sourceField")
        if source_object in (None, "", context.object_name):
            return record.get(source_field, base.get(source_field))
        related = self._find_related(context, task, spec, base)
        return related.get(source_field) if related is not None else None

    def _find_related(self, context: AddonContext, task, spec: Dict[str, Any], base: Record) -> Optional[Record]:
        """Locate the record of another object an input reads from."""
        related_task = context.job.get_task(spec.get("sourceObject")) if context.job else None
        if task is None or related_task is None:
            return None
        use_target = spec.get("lookupSource") == "target"

        compiled = self._lookups.get(spec["alias"])
        if compiled is not None:
            store = related_task.target_data if use_target else related_task.source_data
            prefixed = {f"RECORD.{k}": v for k, v in base.items()}
            for candidate in store.records:
                if compiled.evaluate({**candidate, **prefixed}):
                    return candidate
            return None

        related = None
        for field in task.lookup_fields:
            if field.referenced_object_name == related_task.name and base.get(field.name):
                related = related_task.source_data.id_records_map.get(str(base[field.name]))
                if related is not None:
                    break
        if related is None:
            record_id = base.get(ID_FIELD_NAME)
            child_fields = [f for f in related_task.lookup_fields if f.referenced_object_name == task.name]
            for candidate in related_task.source_data.records:
                if record_id and any(candidate.get(f.name) == record_id for f in child_fields):
                    related = candidate
                    break
        if related is not None and use_target:
            return related_task.source_to_target_record_map.get(related)
        return related


AddonFactory = Callable[[Dict[str, Any]], AddonModule]


def _register_builtin_addons() -> Dict[str, AddonFactory]:
    return {
        "core:RecordsFilter": RecordsFilterAddon,
        "core:RecordsTransform": RecordsTransformAddon,
        "core:FieldValues": FieldValuesAddon,
        "core:Abort": AbortAddon,
    }


class AddonRegistry:
    """Factories of add-on modules keyed by module name."""

    def __init__(self, include_builtins: bool = True):
        self._factories: Dict[str, AddonFactory] = _register_builtin_addons() if include_builtins else {}

    def register(self, name: str, factory: AddonFactory) -> None:
        """Register a module factory under a name."""
        self._factories[name] = factory

    def has(self, name: str) -> bool:
        return name in self._factories

    def create(self, declaration: AddonDeclaration) -> AddonModule:
        """
        Instantiate a declared module.

        Raises:
            InitializationError: When the module is not registered
        """
        factory = self._factories.get(declaration.module)
        if factory is None:
            raise InitializationError(f"Unknown add-on module: {declaration.module}")
        return factory(dict(declaration.args))


class AddonManager:
    """
    Instantiates the declared add-ons of a script and fires their events.
    """

    def __init__(
        self,
        registry: Optional[AddonRegistry] = None,
        simulation_mode: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry or AddonRegistry()
        self.simulation_mode = simulation_mode
        self.logger = logger or logging.getLogger(__name__)
        self.job: Optional["MigrationJob"] = None
        self._modules: Dict[AddonEvent, Dict[str, List[tuple]]] = {event: {} for event in AddonEvent}

    def load(self, script: Script) -> int:
        """
        Create the modules declared by the active objects of a script.

        Returns:
            Number of modules created
        """
        count = 0
        for script_object in script.active_objects:
            count += self.load_object(script_object)
        if count:
            self.logger.info(f"Loaded {count} add-on modules")
        return count

    def load_object(self, script_object: ScriptObject) -> int:
        count = 0
        for event, attribute in EVENT_DECLARATIONS.items():
            for declaration in getattr(script_object, attribute):
                module = self.registry.create(declaration)
                self._modules[event].setdefault(script_object.name, []).append((declaration, module))
                count += 1
        return count

    def has_addons(self, event: AddonEvent, object_name: str) -> bool:
        return bool(self._modules[event].get(object_name))

    def trigger(
        self,
        event: AddonEvent,
        object_name: str,
        records: Optional[List[Record]] = None,
        pass_number: Optional[int] = None,
    ) -> List[Record]:
        """
        Run the modules of an event in declaration order.

        Args:
            event: Lifecycle event
            object_name: Object the event fires for
            records: Records passed to the first module
            pass_number: Update pass the event fires in, 0 for the forwards
                pass; the job's current pass when None

        Returns:
            Records returned by the last module

        Raises:
            AbortedByAddonError: When a module stops the job
        """
        if pass_number is None:
            pass_number = self.job.pass_number if self.job is not None else 0
        current = records if records is not None else []
        for declaration, module in self._modules[event].get(object_name, []):
            context = AddonContext(
                event=event,
                object_name=object_name,
                args=dict(declaration.args),
                simulation_mode=self.simulation_mode,
                description=declaration.description,
                pass_number=pass_number,
                is_first_pass=pass_number == 0,
                job=self.job,
            )
            self.logger.info(f"{object_name}: running add-on {declaration.module} ({event.value})")
            result = module.run(context, current)
            if result is not None:
                current = result
        return current
