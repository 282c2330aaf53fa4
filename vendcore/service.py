"""VendingHandler: gRPC servicer for the logical vending operations.

Messages are ``google.protobuf.Struct`` objects (JSON-shaped), so the service
needs no generated stubs. Domain errors map to gRPC status codes through
each error's ``code``; the details carry the structured error as JSON.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Callable, Optional

import grpc
import structlog
from google.protobuf import json_format, struct_pb2

from .engine import TransactionEngine
from .errors import InvalidArgumentError, VendingError
from .helpers import parse_timestamp
from .queries import DEFAULT_PAGE_SIZE, OrderFilter, OrderQueries

logger = structlog.get_logger()

SERVICE_NAME = "vendcore.Vending"


def struct_to_dict(message: struct_pb2.Struct) -> dict[str, Any]:
    try:
        return json_format.MessageToDict(message)
    except (json_format.Error, ValueError) as e:
        raise InvalidArgumentError("malformed message", detail=str(e)) from e


def dict_to_struct(data: Mapping[str, Any]) -> struct_pb2.Struct:
    return json_format.ParseDict(data, struct_pb2.Struct())


def _required_str(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise InvalidArgumentError(f"{name} is required")
    return value


def _optional_str(data: Mapping[str, Any], name: str) -> Optional[str]:
    value = data.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidArgumentError(f"{name} must be a string", value=value)
    return value


def _optional_int(data: Mapping[str, Any], name: str, default: int) -> int:
    value = data.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgumentError(f"{name} must be an integer", value=value)
    # Struct numbers arrive as floats; NaN and infinity are not integral.
    if isinstance(value, float) and not value.is_integer():
        raise InvalidArgumentError(f"{name} must be an integer", value=value)
    return int(value)


class VendingHandler:
    """gRPC servicer backed by the transaction engine and query surface.

    Maps domain errors to gRPC status codes:
    - NotFoundError -> NOT_FOUND
    - OutOfStockError, InsufficientFundsError, InvalidTransitionError -> FAILED_PRECONDITION
    - ConflictError -> ABORTED
    - StoreUnavailableError -> UNAVAILABLE
    - InvalidArgumentError -> INVALID_ARGUMENT
    """

    def __init__(self, engine: TransactionEngine, queries: OrderQueries) -> None:
        self._engine = engine
        self._queries = queries

    def CreateDispense(self, request: struct_pb2.Struct, context: grpc.ServicerContext) -> struct_pb2.Struct:
        return self._dispatch("CreateDispense", request, context, self._create_dispense)

    def FinalizeDispense(self, request: struct_pb2.Struct, context: grpc.ServicerContext) -> struct_pb2.Struct:
        return self._dispatch("FinalizeDispense", request, context, self._finalize_dispense)

    def GetOrder(self, request: struct_pb2.Struct, context: grpc.ServicerContext) -> struct_pb2.Struct:
        return self._dispatch("GetOrder", request, context, self._get_order)

    def ListOrders(self, request: struct_pb2.Struct, context: grpc.ServicerContext) -> struct_pb2.Struct:
        return self._dispatch("ListOrders", request, context, self._list_orders)

    def RepairPending(self, request: struct_pb2.Struct, context: grpc.ServicerContext) -> struct_pb2.Struct:
        return self._dispatch("RepairPending", request, context, self._repair_pending)

    def _create_dispense(self, data: Mapping[str, Any]) -> dict[str, Any]:
        result = self._engine.attempt_dispense(_required_str(data, "user_id"), _required_str(data, "product_id"))
        return result.to_dict()

    def _finalize_dispense(self, data: Mapping[str, Any]) -> dict[str, Any]:
        order = self._engine.finalize(_required_str(data, "order_id"), _required_str(data, "outcome"))
        return {"order": order.to_dict()}

    def _get_order(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return {"order": self._engine.get_order(_required_str(data, "order_id")).to_dict()}

    def _list_orders(self, data: Mapping[str, Any]) -> dict[str, Any]:
        order_filter = OrderFilter(
            user_id=_optional_str(data, "user_id"),
            product_id=_optional_str(data, "product_id"),
            status=_optional_str(data, "status"),
            start=parse_timestamp(_optional_str(data, "start_date")),
            end=parse_timestamp(_optional_str(data, "end_date")),
        )
        page = self._queries.list_orders(
            order_filter,
            page=_optional_int(data, "page", 1),
            page_size=_optional_int(data, "page_size", DEFAULT_PAGE_SIZE),
            sort_key=_optional_str(data, "sort_key") or "created_at",
            sort_dir=_optional_str(data, "sort_dir") or "desc",
        )
        return page.to_dict()

    def _repair_pending(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return {"repaired": [order.to_dict() for order in self._engine.repair_pending()]}

    def _dispatch(
        self,
        method: str,
        request: struct_pb2.Struct,
        context: grpc.ServicerContext,
        handler: Callable[[Mapping[str, Any]], dict[str, Any]],
    ) -> Optional[struct_pb2.Struct]:
        try:
            return dict_to_struct(handler(struct_to_dict(request)))
        except VendingError as e:
            logger.info("rpc_rejected", method=method, kind=e.kind, code=e.code.name)
            context.abort(e.code, json.dumps(e.to_dict(), default=str))


def add_VendingServicer_to_server(servicer: VendingHandler, server: grpc.Server) -> None:
    """Register the vending service on a gRPC server."""

    def unary(fn):
        return grpc.unary_unary_rpc_method_handler(
            fn,
            request_deserializer=struct_pb2.Struct.FromString,
            response_serializer=struct_pb2.Struct.SerializeToString,
        )

    handlers = {
        "CreateDispense": unary(servicer.CreateDispense),
        "FinalizeDispense": unary(servicer.FinalizeDispense),
        "GetOrder": unary(servicer.GetOrder),
        "ListOrders": unary(servicer.ListOrders),
        "RepairPending": unary(servicer.RepairPending),
    }
    server.add_generic_rpc_handlers((grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),))
