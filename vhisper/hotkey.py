from __future__ import annotations

from asyncio import CancelledError
from collections.abc import Awaitable, Callable

import evdev
from evdev import InputDevice, categorize, ecodes

from .log import debug, errprint

F_KEY_CODES = {f"f{index}": getattr(ecodes, f"KEY_F{index}") for index in range(1, 13)}
CANCEL_KEY_CODES = {
    "esc": ecodes.KEY_ESC,
    "backspace": ecodes.KEY_BACKSPACE,
    "pause": ecodes.KEY_PAUSE,
}

Callback = Callable[[], Awaitable[None]]


def parse_hotkeys(hotkeys_str: str) -> list[int]:
    codes = []
    for hotkey in (k.strip().lower() for k in hotkeys_str.split(",")):
        if hotkey not in F_KEY_CODES:
            raise ValueError(f"Unsupported key: {hotkey}. Use F1-F12")
        codes.append(F_KEY_CODES[hotkey])
    return codes


def parse_cancel_key(name: str | None) -> int | None:
    if not name:
        return None
    try:
        return CANCEL_KEY_CODES[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unsupported cancel key: {name}. Use one of {', '.join(CANCEL_KEY_CODES)}") from None


def find_keyboard(filter_text: str | None = None) -> InputDevice:
    devices = [evdev.InputDevice(path) for path in evdev.list_devices()]
    filter_value = filter_text.strip().lower() if filter_text else None

    def matches_filter(device: InputDevice) -> bool:
        if not filter_value:
            return True
        return filter_value in device.name.lower() or filter_value in device.path.lower()

    def is_physical_keyboard(device: InputDevice) -> bool:
        capabilities = device.capabilities(verbose=False)
        if ecodes.EV_KEY not in capabilities or ecodes.EV_REL in capabilities:
            return False
        if any(virt in device.name.lower() for virt in ("virtual", "dummy", "uinput", "ydotool")):
            return False
        keys = capabilities[ecodes.EV_KEY]
        if any(k in keys for k in (ecodes.BTN_LEFT, ecodes.BTN_RIGHT, ecodes.BTN_MIDDLE)):
            return False
        return all(k in keys for k in (ecodes.KEY_A, ecodes.KEY_Z, ecodes.KEY_F1, ecodes.KEY_F12))

    candidates = [device for device in devices if is_physical_keyboard(device) and matches_filter(device)]
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        candidates = [device for device in devices if matches_filter(device)]
        if not candidates:
            raise RuntimeError(f'No input devices matched filter "{filter_text}"' if filter_value else "No input devices found")
        print("\nNo physical keyboard detected automatically.")
    print("\nAvailable keyboards:")
    for idx, device in enumerate(candidates):
        print(f"  {idx}: {device.path} - {device.name}")
    selection = int(input("Select your keyboard: "))
    return candidates[selection]


class HotKeyListener:
    """Push-to-talk listener: press starts, release stops, the cancel key aborts."""

    KEY_DOWN = evdev.KeyEvent.key_down
    KEY_UP = evdev.KeyEvent.key_up

    def __init__(
        self,
        device: InputDevice,
        codes: list[int],
        on_press: Callback,
        on_release: Callback,
        on_cancel: Callback | None = None,
        cancel_code: int | None = None,
    ):
        self.device = device
        self.codes = codes
        self.on_press = on_press
        self.on_release = on_release
        self.on_cancel = on_cancel
        self.cancel_code = cancel_code
        self.active_code: int | None = None

    @property
    def is_pressed(self) -> bool:
        return self.active_code is not None

    @property
    def key_name(self) -> str | None:
        if self.active_code is None:
            return None
        return next(name for name, code in F_KEY_CODES.items() if code == self.active_code).upper()

    async def handle_key(self, scancode: int, keystate: int) -> None:
        if scancode in self.codes:
            match keystate:
                case self.KEY_DOWN if self.active_code is None:
                    self.active_code = scancode
                    await self.on_press()
                case self.KEY_UP if scancode == self.active_code:
                    self.active_code = None
                    await self.on_release()
        elif scancode == self.cancel_code and keystate == self.KEY_DOWN and self.on_cancel is not None:
            await self.on_cancel()

    async def run(self):
        received_event = False
        try:
            async for event in self.device.async_read_loop():
                received_event = True
                if event.type != ecodes.EV_KEY:
                    continue
                key_event = categorize(event)
                await self.handle_key(key_event.scancode, key_event.keystate)
        except CancelledError:
            debug("Hotkey listener stopped")
        except OSError as exc:
            if not received_event:
                errprint(f"Error while listening for hotkey events: {exc}")
            raise
        finally:
            try:
                self.device.close()
            except OSError as exc:
                debug(f"Error while closing keyboard device: {exc}")
