"""
Bridge - Bitcoin Script Construction

Opcode constants, minimal push encoding and the tapscript leaves used by
bridge addresses.
"""

from .opcodes import ScriptOpcode, encode_script_num, push_data, push_int
from .builder import ScriptBuilder, ANCHOR_OUTPUT_VALUE

__all__ = [
    'ScriptOpcode',
    'encode_script_num',
    'push_data',
    'push_int',
    'ScriptBuilder',
    'ANCHOR_OUTPUT_VALUE',
]
