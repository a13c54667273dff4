from peerwatch.player.base import Player
from peerwatch.player.simulated import SimulatedPlayer

__all__ = ["Player", "SimulatedPlayer"]
