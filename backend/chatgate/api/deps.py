from typing import Annotated

from fastapi import Depends, Request

from chatgate.core.config import Settings
from chatgate.lifecycle import ServerState
from chatgate.providers.base import CapabilitySource


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_capability_source(request: Request) -> CapabilitySource:
    return request.app.state.capability_source


def get_server_state(request: Request) -> ServerState:
    return request.app.state.server_state


SettingsDep = Annotated[Settings, Depends(get_settings)]
CapabilitySourceDep = Annotated[CapabilitySource, Depends(get_capability_source)]
ServerStateDep = Annotated[ServerState, Depends(get_server_state)]
