"""PeerWatch —— 无中心的多端同步观影：房间会合、播放状态收敛与聊天复制。"""

__version__ = "0.1.0"
