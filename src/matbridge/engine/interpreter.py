"""Tree-walking evaluator holding one engine workspace."""

import fnmatch
import logging
import sys
from collections.abc import Callable

import numpy as np

from matbridge.engine import builtins
from matbridge.engine import display
from matbridge.engine import indexing
from matbridge.engine import operators
from matbridge.engine import parser
from matbridge.engine.errors import EngineError
from matbridge.engine.errors import undefined_name
from matbridge.engine.indexing import COLON
from matbridge.engine.values import CellArray
from matbridge.engine.values import CharArray
from matbridge.engine.values import StructArray
from matbridge.engine.values import empty_double
from matbridge.engine.values import is_sparse
from matbridge.engine.values import numel
from matbridge.engine.values import shape_of

__all__: list[str] = ["Interpreter"]

logger: logging.Logger = logging.getLogger(__name__)


def _is_plain_empty(value: object) -> bool:
    """Report whether ``value`` is a ``0x0`` numeric ``[]`` that may turn into a cell or struct."""
    if isinstance(value, (CharArray, CellArray, StructArray)) is True or is_sparse(value) is True:
        return False
    return shape_of(value) == (0, 0)


def _one_cell(value: object) -> CellArray:
    items: np.ndarray = np.empty((1, 1), dtype=object)
    items[0, 0] = value
    return CellArray(items)


def _too_many_outputs() -> EngineError:
    return EngineError("matbridge:maxlhs", "Too many output arguments.")


class Interpreter:
    """Evaluate engine source against a private workspace.

    ``write`` receives everything the program prints, including the
    ``name = value`` echo of statements not terminated by a semicolon.
    """

    workspace: dict[str, object]
    rng: np.random.Generator
    _write: Callable[[str], object]
    _end_stack: list[tuple[object, int, int]]

    def __init__(self, write: Callable[[str], object] | None = None) -> None:
        """Initialize an empty workspace.

        :param write: Output sink; defaults to ``sys.stdout.write``.
        """
        self.workspace = {}
        self.rng = np.random.default_rng()
        self._write = write if write is not None else sys.stdout.write
        self._end_stack = []

    def write(self, text: str) -> None:
        self._write(text)

    def set_writer(self, write: Callable[[str], object]) -> None:
        self._write = write

    # -- workspace --------------------------------------------------------------

    def variable_names(self) -> list[str]:
        return sorted(self.workspace)

    def who_text(self) -> str:
        names: list[str] = self.variable_names()
        if len(names) == 0:
            return ""
        return "\nYour variables are:\n\n" + "  ".join(names) + "\n\n"

    def clear(self, patterns: list[str]) -> None:
        """Remove variables; an empty pattern list clears the whole workspace."""
        if len(patterns) == 0 or "all" in patterns or "variables" in patterns:
            self.workspace.clear()
            return
        for pattern in patterns:
            for name in fnmatch.filter(list(self.workspace), pattern):
                del self.workspace[name]

    # -- statements -------------------------------------------------------------

    def execute(self, source: str) -> None:
        """Parse and run ``source`` statement by statement.

        Statements before a failing one keep their effects.

        :param source: Program text.
        :raises EngineError: On syntax or runtime errors.
        """
        statements: list[parser.Statement] = parser.parse(source)
        logger.debug("Executing %d statement(s)", len(statements))
        for statement in statements:
            self._execute_statement(statement)

    def _execute_statement(self, statement: parser.Statement) -> None:
        if isinstance(statement, parser.Command) is True:
            self._execute_command(statement)
            return
        if isinstance(statement, parser.Assign) is True:
            self._execute_assign(statement)
            return

        expr: parser.Expr = statement.expr
        if isinstance(expr, parser.Name) is True and expr.name in self.workspace:
            if statement.display is True:
                self.write(display.render(expr.name, self.workspace[expr.name]))
            return
        results: list[object] = self.eval_multi(expr, 0)
        for result in results:
            self.workspace["ans"] = result
            if statement.display is True:
                self.write(display.render("ans", result))

    def _execute_command(self, command: parser.Command) -> None:
        if command.name == "clear":
            self.clear(command.args)
        elif command.name == "who":
            self.write(self.who_text())

    def _execute_assign(self, statement: parser.Assign) -> None:
        targets: list[parser.LValue | None] = statement.targets
        if len(targets) == 1:
            target: parser.LValue = targets[0]
            deleting: bool = (
                isinstance(statement.value, parser.Matrix) is True
                and len(statement.value.rows) == 0
                and len(target.accessors) > 0
                and target.accessors[-1].kind == "paren"
            )
            value: object = self.eval_single(statement.value)
            self._store(target, value, deleting)
            if statement.display is True:
                self.write(display.render(target.name, self.workspace[target.name]))
            return

        values: list[object] = self.eval_multi(statement.value, len(targets))
        if len(values) < len(targets):
            raise _too_many_outputs()
        for lvalue, value in zip(targets, values):
            if lvalue is None:
                continue
            self._store(lvalue, value, False)
        if statement.display is True:
            for lvalue in targets:
                if lvalue is not None:
                    self.write(display.render(lvalue.name, self.workspace[lvalue.name]))

    def _store(self, target: parser.LValue, value: object, deleting: bool) -> None:
        if len(target.accessors) == 0:
            self.workspace[target.name] = value
            return
        current: object | None = self.workspace.get(target.name)
        self.workspace[target.name] = self._assign_path(current, target.accessors, value, deleting)

    def _assign_path(
        self,
        current: object | None,
        accessors: list[parser.Accessor],
        rhs: object,
        deleting: bool,
    ) -> object:
        """Return ``current`` with ``rhs`` stored at the end of the accessor chain."""
        accessor: parser.Accessor = accessors[0]
        rest: list[parser.Accessor] = accessors[1:]

        if accessor.kind == "field":
            return self._assign_field(current, accessor, rest, rhs, deleting)

        if accessor.kind == "brace":
            base: object = current
            if base is None or _is_plain_empty(base) is True:
                base = CellArray(np.empty((0, 0), dtype=object))
            if isinstance(base, CellArray) is False:
                raise EngineError(
                    "matbridge:cellAssignToNonCell",
                    "Brace indexing assignment is not supported for variables of this type.",
                )
            subscripts: list[object] = self._subscripts(base, accessor.args)
            if len(rest) == 0:
                return indexing.assign(base, subscripts, _one_cell(rhs))
            child: object | None = self._existing_element(base, subscripts)
            if isinstance(child, CellArray) is True:
                child = child.flat()[0]
            updated: object = self._assign_path(child, rest, rhs, deleting)
            return indexing.assign(base, subscripts, _one_cell(updated))

        subscripts = self._subscripts(current if current is not None else empty_double(), accessor.args)
        if len(rest) == 0:
            if deleting is True:
                if current is None:
                    raise EngineError(
                        "matbridge:nullAssignment",
                        "Deletion requires an existing variable.",
                    )
                return indexing.delete(current, subscripts)
            return indexing.assign(current, subscripts, rhs)
        if rest[0].kind != "field":
            raise EngineError(
                "matbridge:badIndexChain",
                "()-indexing must appear last in an index expression.",
            )
        structure: object = current
        if structure is None or _is_plain_empty(structure) is True:
            structure = StructArray([], np.empty((0, 0), dtype=object))
        if isinstance(structure, StructArray) is False:
            raise EngineError(
                "matbridge:structAssignToNonStruct",
                "Field assignment is not supported for variables of this type.",
            )
        element: object | None = self._existing_element(structure, subscripts)
        if element is None:
            element = StructArray.scalar(indexing.empty_struct_element(structure.field_names))
        updated_element: object = self._assign_path(element, rest, rhs, deleting)
        structure = indexing.with_fields(structure, updated_element.field_names)
        updated_element = indexing.with_fields(updated_element, structure.field_names)
        return indexing.assign(structure, subscripts, updated_element)

    def _assign_field(
        self,
        current: object | None,
        accessor: parser.Accessor,
        rest: list[parser.Accessor],
        rhs: object,
        deleting: bool,
    ) -> StructArray:
        name: str = self._field_name(accessor)
        structure: object = current
        if structure is None or _is_plain_empty(structure) is True:
            structure = StructArray.scalar({})
        if isinstance(structure, StructArray) is False:
            raise EngineError(
                "matbridge:structAssignToNonStruct",
                "Field assignment is not supported for variables of this type.",
            )
        if numel(structure) != 1:
            raise EngineError(
                "matbridge:scalarStructRequired",
                "Field assignment to a struct array requires indexing a single element.",
            )
        element: dict[str, object] = dict(structure.flat()[0])
        if len(rest) == 0:
            element[name] = rhs
        else:
            element[name] = self._assign_path(element.get(name), rest, rhs, deleting)
        field_names: list[str] = list(structure.field_names)
        if name not in field_names:
            field_names.append(name)
        items: np.ndarray = np.empty((1, 1), dtype=object)
        items[0, 0] = element
        return StructArray(field_names, items)

    def _existing_element(self, value: object, subscripts: list[object]) -> object | None:
        """Return the single element ``value(subscripts)`` or ``None`` past the end."""
        try:
            selected: object = indexing.index(value, subscripts)
        except EngineError as exc:
            if exc.identifier == "matbridge:indexOutOfBounds":
                return None
            raise
        if numel(selected) != 1:
            raise EngineError(
                "matbridge:scalarIndexRequired",
                "Nested assignment requires the index to select exactly one element.",
            )
        return selected

    # -- expressions ------------------------------------------------------------

    def eval_single(self, expr: parser.Expr) -> object:
        """Evaluate an expression that must produce exactly one value."""
        values: list[object] = self.eval_multi(expr, 1)
        if len(values) == 0:
            raise _too_many_outputs()
        return values[0]

    def eval_multi(self, expr: parser.Expr, nargout: int) -> list[object]:
        """Evaluate ``expr`` into a comma-separated list.

        :param expr: Expression node.
        :param nargout: Number of requested outputs, 0 for a bare statement.
        :returns: Values; function calls and ``c{:}`` may return several.
        """
        if isinstance(expr, parser.Name) is True:
            if expr.name in self.workspace:
                return [self.workspace[expr.name]]
            return builtins.call(self, expr.name, [], nargout)

        if isinstance(expr, parser.Index) is True:
            if isinstance(expr.target, parser.Name) is True and expr.target.name not in self.workspace:
                args: list[object] = self._call_arguments(expr.args)
                return builtins.call(self, expr.target.name, args, nargout)
            value: object = self.eval_single(expr.target)
            return [indexing.index(value, self._subscripts(value, expr.args))]

        if isinstance(expr, parser.CellIndex) is True:
            container: object = self.eval_single(expr.target)
            return indexing.cell_contents(container, self._subscripts(container, expr.args))

        if isinstance(expr, parser.Field) is True:
            structure: object = self.eval_single(expr.target)
            if isinstance(structure, StructArray) is False:
                raise EngineError(
                    "matbridge:structRefFromNonStruct",
                    "Dot indexing is not supported for variables of this type.",
                )
            name: str = self._field_name(expr)
            if name not in structure.field_names:
                raise EngineError("matbridge:nonExistentField", f'Unrecognized field name "{name}".')
            return [element[name] for element in structure.flat()]

        return [self.eval_expr(expr)]

    def eval_expr(self, expr: parser.Expr) -> object:
        """Evaluate an expression node to a single engine value."""
        if isinstance(expr, parser.Number) is True:
            return np.array([[expr.value]])
        if isinstance(expr, parser.String) is True:
            return CharArray.from_text(expr.value)
        if isinstance(expr, (parser.Name, parser.Index, parser.CellIndex, parser.Field)) is True:
            return self.eval_single(expr)
        if isinstance(expr, parser.End) is True:
            return np.array([[float(self._end_value())]])
        if isinstance(expr, parser.Colon) is True:
            return operators.make_range(np.array([[1.0]]), None, np.array([[float(self._end_value())]]))
        if isinstance(expr, parser.Matrix) is True:
            return self._eval_matrix(expr)
        if isinstance(expr, parser.CellLiteral) is True:
            return self._eval_cell(expr)
        if isinstance(expr, parser.Binary) is True:
            return self._eval_binary(expr)
        if isinstance(expr, parser.Unary) is True:
            operand: object = self.eval_single(expr.operand)
            if expr.operator == "-":
                return operators.negate(operand)
            if expr.operator == "+":
                return operators.unary_plus(operand)
            return operators.logical_not(operand)
        if isinstance(expr, parser.Transpose) is True:
            return operators.transpose(self.eval_single(expr.operand), expr.conjugate)
        if isinstance(expr, parser.Range) is True:
            start: object = self.eval_single(expr.start)
            step: object | None = None if expr.step is None else self.eval_single(expr.step)
            return operators.make_range(start, step, self.eval_single(expr.stop))
        raise EngineError("matbridge:internal", f"Cannot evaluate node {type(expr).__name__}")

    def _eval_binary(self, expr: parser.Binary) -> object:
        if expr.operator == "&&":
            if operators.logical_scalar(self.eval_single(expr.left), "&&") is False:
                return np.array([[False]])
            return np.array([[operators.logical_scalar(self.eval_single(expr.right), "&&")]])
        if expr.operator == "||":
            if operators.logical_scalar(self.eval_single(expr.left), "||") is True:
                return np.array([[True]])
            return np.array([[operators.logical_scalar(self.eval_single(expr.right), "||")]])
        left: object = self.eval_single(expr.left)
        right: object = self.eval_single(expr.right)
        return operators.binary(expr.operator, left, right)

    def _expand(self, expr: parser.Expr) -> list[object]:
        """Evaluate an element of a literal or argument list, expanding ``c{:}`` and ``s.f``."""
        if isinstance(expr, (parser.CellIndex, parser.Field)) is True:
            return self.eval_multi(expr, 1)
        return [self.eval_single(expr)]

    def _eval_matrix(self, expr: parser.Matrix) -> object:
        if len(expr.rows) == 0:
            return empty_double()
        rows: list[object] = []
        for row in expr.rows:
            elements: list[object] = []
            for element in row:
                elements.extend(self._expand(element))
            rows.append(operators.concatenate(elements, 1))
        return operators.concatenate(rows, 0)

    def _eval_cell(self, expr: parser.CellLiteral) -> CellArray:
        if len(expr.rows) == 0:
            return CellArray(np.empty((0, 0), dtype=object))
        rows: list[object] = []
        for row in expr.rows:
            elements: list[object] = []
            for element in row:
                for value in self._expand(element):
                    elements.append(value if isinstance(value, CellArray) is True else _one_cell(value))
            rows.append(operators.concatenate(elements, 1))
        result: object = operators.concatenate(rows, 0)
        if isinstance(result, CellArray) is False:
            return CellArray(np.empty((0, 0), dtype=object))
        return result

    def _call_arguments(self, args: list[parser.Expr]) -> list[object]:
        values: list[object] = []
        for arg in args:
            if isinstance(arg, parser.Colon) is True:
                values.append(CharArray.from_text(":"))
                continue
            values.extend(self._expand(arg))
        return values

    def _subscripts(self, value: object, args: list[parser.Expr]) -> list[object]:
        """Evaluate index arguments with ``end`` bound to ``value``."""
        subscripts: list[object] = []
        for position, arg in enumerate(args):
            if isinstance(arg, parser.Colon) is True:
                subscripts.append(COLON)
                continue
            self._end_stack.append((value, position, len(args)))
            try:
                subscripts.append(self.eval_single(arg))
            finally:
                self._end_stack.pop()
        return subscripts

    def _end_value(self) -> int:
        if len(self._end_stack) == 0:
            raise EngineError("matbridge:endOutsideIndex", "'end' is only valid inside an index expression.")
        value: object
        position: int
        count: int
        value, position, count = self._end_stack[-1]
        shape: tuple[int, ...] = shape_of(value)
        if count == 1:
            return numel(value)
        if position == count - 1:
            remaining: int = 1
            for dim in shape[position:]:
                remaining *= dim
            return remaining
        return shape[position] if position < len(shape) else 1

    def _field_name(self, node: parser.Field | parser.Accessor) -> str:
        if node.name is not None:
            return node.name
        value: object = self.eval_single(node.name_expr)
        if isinstance(value, CharArray) is False:
            raise EngineError("matbridge:dynamicFieldName", "Dynamic field names must be character vectors.")
        return value.text()

    # -- host access ------------------------------------------------------------

    def get(self, name: str) -> object:
        """Return a workspace variable.

        :raises EngineError: When the variable does not exist.
        """
        if name not in self.workspace:
            raise undefined_name(name)
        return self.workspace[name]

    def put(self, name: str, value: object) -> None:
        self.workspace[name] = value
