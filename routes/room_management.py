from fastapi import APIRouter, Depends, HTTPException, Request, status
import logging
from connection_directory import ConnectionDirectory
from models.schemas import CreateRoomResponse, ParticipantInfo, RoomInfo, RoomListResponse, RoomSummary
from room_manager import RoomRegistry

logger = logging.getLogger(__name__)
router = APIRouter()


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_directory(request: Request) -> ConnectionDirectory:
    return request.app.state.directory


def participant_infos(participant_ids, directory: ConnectionDirectory):
    participants = []
    for pid in sorted(participant_ids):
        entry = directory.lookup(pid)
        participants.append(ParticipantInfo(id=pid, displayName=entry.display_name if entry else "Unknown"))
    return participants


@router.post("/rooms", response_model=CreateRoomResponse)
async def create_room(registry: RoomRegistry = Depends(get_registry)):
    """
    Allocate a fresh room id
    """
    room = registry.create()
    logger.info(f"Allocated room: {room.room_id}")
    return CreateRoomResponse(roomId=room.room_id)


@router.get("/rooms", response_model=RoomListResponse)
async def list_rooms(registry: RoomRegistry = Depends(get_registry)):
    """
    List all active rooms with their participant counts
    """
    room_list = [
        RoomSummary(
            id=room.room_id,
            participants=len(room.participants),
            created=room.created.isoformat(),
        )
        for room in registry.list_rooms()
    ]
    return RoomListResponse(rooms=room_list, total=len(room_list))


@router.get("/room/{room_id}", response_model=RoomInfo)
async def get_room_info(
    room_id: str,
    registry: RoomRegistry = Depends(get_registry),
    directory: ConnectionDirectory = Depends(get_directory),
):
    """
    Get detailed information about a specific room
    """
    room = registry.get(room_id)
    if room is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Room '{room_id}' not found"
        )

    return RoomInfo(
        id=room.room_id,
        numParticipants=len(room.participants),
        participants=participant_infos(room.participants, directory),
        created=room.created.isoformat(),
    )
