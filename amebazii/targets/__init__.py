from .rtl8720c import RTL8720C

DEFAULT_CHIP = RTL8720C
