"""
stock_services.testing_material_service -- public entry point for the
testing material workflow.

Responsibility:
    One method per exposed operation.  Each method checks the actor's
    capability and location membership, opens exactly one transaction
    (``session_scope``), delegates to the kernel, and returns frozen DTOs.

        create_request              CREATE, from the actor's outlet
        accept_request              ACCEPT, actor works at the center
        record_results              COMPLETE, actor works at the center
        complete_request            COMPLETE, actor works at the center
        cancel_request              CREATE at the outlet or ACCEPT at the center
        list_requests / get_request VIEW, limited to the actor's location
        list_under_testing          VIEW
        list_under_testing_serials  VIEW

    Actors holding MANAGE_ALL are not limited to their home location.

Architecture position:
    Services layer.  Sits above stock_kernel and stock_config.

Invariants:
    - Every operation runs in one transaction; any error rolls it back
      and propagates unchanged.
    - Permission checks happen before any kernel call.

Failure modes:
    - PermissionDeniedError for a missing capability or a foreign location.
    - InvalidInputError when a page size exceeds the configured maximum.
    - Everything the kernel raises, unchanged.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from stock_config.schema import PagingConfig, RequestNumberingConfig, StockConfig
from stock_kernel.db.engine import session_scope
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import (
    PageRequest,
    RequestFilter,
    RequestLineSpec,
    RequestPage,
    ResultSpec,
    TestingRequestInfo,
    UnderTestingProductInfo,
    UnderTestingSerials,
)
from stock_kernel.domain.values import SerialStatus
from stock_kernel.exceptions import InvalidInputError, PermissionDeniedError
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.selectors.testing_request_selector import TestingRequestSelector
from stock_kernel.services.request_number_service import RequestNumberService
from stock_kernel.services.testing_workflow import TestingWorkflowEngine
from stock_services.permissions import (
    MODULE,
    ActorContext,
    Capability,
    PermissionOracle,
    RolePermissionOracle,
)

logger = get_logger("services.testing_material")

T = TypeVar("T")


class TestingMaterialService:
    """
    Facade over the testing workflow for one deployment.

    Args:
        session_factory: Where each operation's session comes from.  None
            uses the engine module's factory.
        oracle: Capability source.
        clock: Time source for request timestamps and numbers.
        numbering: Request number prefix, width and retry bound.
        paging: Default and maximum page size for list_requests.
    """

    __test__ = False

    def __init__(
        self,
        oracle: PermissionOracle,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        numbering: RequestNumberingConfig | None = None,
        paging: PagingConfig | None = None,
    ):
        self._oracle = oracle
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._numbering = numbering or RequestNumberingConfig()
        self._paging = paging or PagingConfig()

    @classmethod
    def from_config(
        cls,
        config: StockConfig,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
    ) -> TestingMaterialService:
        return cls(
            oracle=RolePermissionOracle.from_config(config),
            session_factory=session_factory,
            clock=clock,
            numbering=config.request_numbering,
            paging=config.paging,
        )

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _run(
        self,
        operation: str,
        actor: ActorContext,
        work: Callable[[Session], T],
        request_id: UUID | None = None,
    ) -> T:
        """Run ``work`` in one transaction with operation logging."""
        with LogContext.bind(
            correlation_id=str(uuid4()),
            actor_id=str(actor.actor_id),
            location_id=str(actor.home_location_id) if actor.home_location_id else None,
            request_id=str(request_id) if request_id else None,
        ):
            logger.info("operation_started", extra={"operation": operation})
            t0 = time.monotonic()
            try:
                with session_scope(self._session_factory) as session:
                    result = work(session)
            except Exception as exc:
                logger.info(
                    "operation_failed",
                    extra={
                        "operation": operation,
                        "error_code": getattr(exc, "code", type(exc).__name__),
                        "duration_ms": round((time.monotonic() - t0) * 1000, 3),
                    },
                )
                raise
            logger.info(
                "operation_completed",
                extra={
                    "operation": operation,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 3),
                },
            )
            return result

    def _engine(self, session: Session) -> TestingWorkflowEngine:
        return TestingWorkflowEngine(
            session,
            clock=self._clock,
            numbering=RequestNumberService(
                session,
                prefix=self._numbering.prefix,
                width=self._numbering.sequence_width,
                max_attempts=self._numbering.max_attempts,
            ),
        )

    def _has(self, actor: ActorContext, capability: Capability) -> bool:
        return self._oracle.has_capability(actor, MODULE, capability)

    def _deny(self, actor: ActorContext, capability: Capability, reason: str) -> None:
        logger.warning(
            "permission_denied",
            extra={
                "permission_module": MODULE,
                "capability": capability.value,
                "reason": reason,
            },
        )
        raise PermissionDeniedError(actor.actor_id, capability.value, reason)

    def _require(self, actor: ActorContext, capability: Capability) -> None:
        if not self._has(actor, capability):
            self._deny(actor, capability, "capability not granted")

    def _require_location(
        self, actor: ActorContext, capability: Capability, location_ids: Sequence[UUID]
    ) -> None:
        """Actor must work at one of ``location_ids`` unless they hold MANAGE_ALL."""
        if actor.home_location_id in location_ids:
            return
        if self._has(actor, Capability.MANAGE_ALL):
            return
        self._deny(actor, capability, "actor does not belong to this location")

    def _visible_locations(self, actor: ActorContext) -> list[UUID] | None:
        if self._has(actor, Capability.MANAGE_ALL):
            return None
        return [actor.home_location_id] if actor.home_location_id else []

    # =========================================================================
    # Write operations
    # =========================================================================

    def create_request(
        self,
        actor: ActorContext,
        to_location_id: UUID,
        lines: Sequence[RequestLineSpec],
        remark: str | None = None,
        from_location_id: UUID | None = None,
    ) -> TestingRequestInfo:
        """
        Request testing of the actor's outlet stock at ``to_location_id``.

        ``from_location_id`` defaults to the actor's home location; naming
        another outlet needs MANAGE_ALL.
        """

        def work(session: Session) -> TestingRequestInfo:
            self._require(actor, Capability.CREATE)
            source = from_location_id or actor.home_location_id
            if source is None:
                self._deny(actor, Capability.CREATE, "actor has no home location")
            self._require_location(actor, Capability.CREATE, [source])
            return self._engine(session).create_request(
                from_location_id=source,
                to_location_id=to_location_id,
                lines=lines,
                requested_by_id=actor.actor_id,
                remark=remark,
            )

        return self._run("create_request", actor, work)

    def accept_request(self, actor: ActorContext, request_id: UUID) -> TestingRequestInfo:
        """Accept a pending request at the actor's testing center."""

        def work(session: Session) -> TestingRequestInfo:
            self._require(actor, Capability.ACCEPT)
            request = TestingRequestSelector(session).get(request_id)
            self._require_location(actor, Capability.ACCEPT, [request.to_location_id])
            return self._engine(session).accept_request(request_id, actor.actor_id)

        return self._run("accept_request", actor, work, request_id=request_id)

    def record_results(
        self,
        actor: ActorContext,
        request_id: UUID,
        results: Sequence[ResultSpec],
    ) -> TestingRequestInfo:
        """Record test outcomes for serials or non-serialized lines."""

        def work(session: Session) -> TestingRequestInfo:
            self._require(actor, Capability.COMPLETE)
            request = TestingRequestSelector(session).get(request_id)
            self._require_location(actor, Capability.COMPLETE, [request.to_location_id])
            return self._engine(session).record_results(request_id, results, actor.actor_id)

        return self._run("record_results", actor, work, request_id=request_id)

    def complete_request(self, actor: ActorContext, request_id: UUID) -> TestingRequestInfo:
        """Return every tested item to its outlet and close the request."""

        def work(session: Session) -> TestingRequestInfo:
            self._require(actor, Capability.COMPLETE)
            request = TestingRequestSelector(session).get(request_id)
            self._require_location(actor, Capability.COMPLETE, [request.to_location_id])
            return self._engine(session).complete_request(request_id, actor.actor_id)

        return self._run("complete_request", actor, work, request_id=request_id)

    def cancel_request(
        self,
        actor: ActorContext,
        request_id: UUID,
        reason: str | None = None,
    ) -> TestingRequestInfo:
        """
        Cancel a pending request.

        The requesting outlet needs CREATE, the receiving center ACCEPT.
        """

        def work(session: Session) -> TestingRequestInfo:
            request = TestingRequestSelector(session).get(request_id)
            if actor.home_location_id == request.from_location_id:
                self._require(actor, Capability.CREATE)
            elif actor.home_location_id == request.to_location_id:
                self._require(actor, Capability.ACCEPT)
            elif not self._has(actor, Capability.MANAGE_ALL):
                self._deny(actor, Capability.CREATE, "actor does not belong to this request")
            return self._engine(session).cancel_request(request_id, actor.actor_id, reason)

        return self._run("cancel_request", actor, work, request_id=request_id)

    # =========================================================================
    # Read operations
    # =========================================================================

    def list_requests(
        self,
        actor: ActorContext,
        flt: RequestFilter | None = None,
        page: PageRequest | None = None,
    ) -> RequestPage:
        """Requests the actor may see, filtered, sorted and paged."""
        page = page or PageRequest(limit=self._paging.default_limit)

        def work(session: Session) -> RequestPage:
            self._require(actor, Capability.VIEW)
            if page.limit > self._paging.max_limit:
                raise InvalidInputError(
                    f"limit {page.limit} exceeds the maximum of {self._paging.max_limit}"
                )
            return TestingRequestSelector(session).list_requests(
                flt, page, visible_location_ids=self._visible_locations(actor)
            )

        return self._run("list_requests", actor, work)

    def get_request(self, actor: ActorContext, request_id: UUID) -> TestingRequestInfo:
        def work(session: Session) -> TestingRequestInfo:
            self._require(actor, Capability.VIEW)
            request = TestingRequestSelector(session).get(request_id)
            self._require_location(
                actor,
                Capability.VIEW,
                [request.from_location_id, request.to_location_id],
            )
            return request

        return self._run("get_request", actor, work, request_id=request_id)

    def list_under_testing(
        self, actor: ActorContext, location_id: UUID | None = None
    ) -> list[UnderTestingProductInfo]:
        """
        Products with units under test, at ``location_id`` or at the actor's
        own center.  MANAGE_ALL without a location lists every center.
        """

        def work(session: Session) -> list[UnderTestingProductInfo]:
            self._require(actor, Capability.VIEW)
            if location_id is not None:
                self._require_location(actor, Capability.VIEW, [location_id])
                locations = [location_id]
            else:
                locations = self._visible_locations(actor)
            return StockSelector(session).list_under_testing(locations)

        return self._run("list_under_testing", actor, work)

    def list_under_testing_serials(
        self,
        actor: ActorContext,
        location_id: UUID,
        product_id: UUID,
        status: SerialStatus | None = SerialStatus.UNDER_TESTING,
        search: str | None = None,
    ) -> UnderTestingSerials:
        """Serials of one product at one center, newest first."""

        def work(session: Session) -> UnderTestingSerials:
            self._require(actor, Capability.VIEW)
            self._require_location(actor, Capability.VIEW, [location_id])
            return StockSelector(session).under_testing_serials(
                location_id, product_id, status=status, search=search
            )

        return self._run("list_under_testing_serials", actor, work)
