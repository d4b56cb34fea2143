import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lab_booking.api.deps import get_current_admin, get_current_user
from lab_booking.database import get_db
from lab_booking.models.lab_computer import LabComputer
from lab_booking.models.user import User
from lab_booking.schemas.computer import (
    ComputerCreateRequest,
    ComputerListResponse,
    ComputerResponse,
    ComputerUpdateRequest,
    MaintenanceRequest,
)
from lab_booking.services.computer import ComputerService

router = APIRouter(prefix="/computers", tags=["Lab Computers"])


@router.get("/", response_model=ComputerListResponse)
async def list_computers(
    is_active: bool | None = True,
    db: AsyncSession = Depends(get_db),
    _current_user: User = Depends(get_current_user),
):
    """List lab computers."""
    computers, total = await ComputerService.list_computers(db, is_active=is_active)
    return ComputerListResponse(
        items=[ComputerResponse.model_validate(c) for c in computers],
        total=total,
    )


@router.get("/{computer_id}", response_model=ComputerResponse)
async def get_computer(
    computer_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _current_user: User = Depends(get_current_user),
):
    """Get a specific lab computer."""
    return await ComputerService.get_by_id(db, computer_id)


@router.post("/", response_model=ComputerResponse, status_code=201)
async def create_computer(
    body: ComputerCreateRequest,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin),
):
    """Add a lab computer. Admin only."""
    computer = LabComputer(
        name=body.name,
        location=body.location,
        specifications=body.specifications,
    )
    db.add(computer)
    await db.commit()
    await db.refresh(computer)
    return computer


@router.put("/{computer_id}", response_model=ComputerResponse)
async def update_computer(
    computer_id: uuid.UUID,
    body: ComputerUpdateRequest,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin),
):
    """Update a lab computer's details. Admin only; status is managed by bookings."""
    computer = await ComputerService.get_by_id(db, computer_id)

    if body.name is not None:
        computer.name = body.name
    if body.location is not None:
        computer.location = body.location
    if body.specifications is not None:
        computer.specifications = body.specifications

    await db.commit()
    await db.refresh(computer)
    return computer


@router.put("/{computer_id}/maintenance", response_model=ComputerResponse)
async def set_maintenance(
    computer_id: uuid.UUID,
    body: MaintenanceRequest,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin),
):
    """Toggle maintenance mode. Admin only."""
    return await ComputerService.set_maintenance(db, computer_id, body.maintenance)


@router.delete("/{computer_id}", status_code=204)
async def delete_computer(
    computer_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(get_current_admin),
):
    """Soft-delete a lab computer. Admin only."""
    await ComputerService.deactivate(db, computer_id)
