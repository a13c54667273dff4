from fastapi import Request

from peerwatch.services.relay import RelaySystem


def get_relay_system(request: Request) -> RelaySystem:
    return request.app.state.relay_system
