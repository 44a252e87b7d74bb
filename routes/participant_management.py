# routes/participant_management.py
from fastapi import APIRouter, Depends
from config.signaling_config import get_ice_server_config
from connection_directory import ConnectionDirectory
from models.schemas import IceServer, IceServersResponse, ParticipantListResponse
from room_manager import RoomRegistry
from routes.room_management import get_directory, get_registry, participant_infos

router = APIRouter()


@router.get("/room/{room_id}/participants", response_model=ParticipantListResponse)
async def get_room_participants(
    room_id: str,
    registry: RoomRegistry = Depends(get_registry),
    directory: ConnectionDirectory = Depends(get_directory),
):
    """
    Get list of participants in a room; unknown rooms have none
    """
    participants = participant_infos(registry.list_participants(room_id), directory)
    return ParticipantListResponse(
        roomId=room_id,
        participants=participants,
        total=len(participants)
    )


@router.get("/ice-servers", response_model=IceServersResponse)
async def get_ice_servers():
    """
    STUN/TURN servers clients should hand to their peer connections
    """
    return IceServersResponse(iceServers=[IceServer(**server) for server in get_ice_server_config()])
