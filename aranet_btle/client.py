import asyncio
from dataclasses import asdict, dataclass
from enum import IntEnum
import logging
import platform
import struct
import time
from typing import Callable, Dict, List, Optional

from bleak import BleakClient
from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError
from bleak.uuids import normalize_uuid_16

logger = logging.getLogger(__name__)

# Company Identifier (Akciju sabiedriba "SAF TEHNIKA")
MANUFACTURER_ID = 0x0702

# SAF Tehnika Service, advertised by Aranet devices
SERVICE_SAF_TEHNIKA = normalize_uuid_16(0xfce0)

# co2, temperature, pressure, humidity, battery, status, interval, age
CHARACTERISTIC_CURRENT_READINGS = "f0cd3001-95da-4f4b-9ac8-aa55d312af0c"

READINGS_FORMAT = "<HHHBBBHH"
READINGS_SIZE = struct.calcsize(READINGS_FORMAT)

# Non-sensor bytes in front of the readings in manufacturer data
ADVERTISEMENT_HEADER_SIZE = 8

# Bleak raises asyncio.TimeoutError when a connection attempt times out
TRANSPORT_ERRORS = (BleakError, asyncio.TimeoutError)


class Aranet4Error(Exception):
    pass


class ConnectError(Aranet4Error):
    """Failed to set up a connection or a scan"""


class AdapterUnavailable(ConnectError):
    def __init__(self):
        super().__init__("failed to get a bluetooth adapter")


class DeviceNotFound(ConnectError):
    def __init__(self, name_filter: str = "Aranet4"):
        super().__init__(f"no device with a name containing '{name_filter}' found")
        self.name_filter = name_filter


class CharacteristicNotFound(ConnectError):
    def __init__(self, uuid: str):
        super().__init__(f"the characteristic for UUID {uuid} was not found")
        self.uuid = uuid


class DeviceError(Aranet4Error):
    """Operation on a connected device failed"""


class DecodeError(DeviceError):
    pass


class TransportError(Aranet4Error):
    """Wraps an error raised by bleak, keeping it in `error`"""

    def __init__(self, error: Exception):
        super().__init__(str(error) or type(error).__name__)
        self.error = error


class ConnectTransportError(TransportError, ConnectError):
    pass


class SessionTransportError(TransportError, DeviceError):
    pass


class Color(IntEnum):
    """Enum for the different status colors"""

    ERROR = 0
    GREEN = 1
    YELLOW = 2
    RED = 3


@dataclass
class Config:
    """Connection and scan settings"""

    # Adapter name (e.g. "hci0"). None selects the first available adapter
    adapter: Optional[str] = None
    # Seconds to scan before looking at what was found
    settle_delay: float = 2.0
    connect_timeout: float = 10.0
    # None waits for as long as the device takes
    read_timeout: Optional[float] = None
    name_filter: str = "Aranet4"


@dataclass(frozen=True)
class SensorReading:
    """Current measurements, as reported by the device"""

    co2: int
    temperature: float
    pressure: int
    humidity: int
    battery: int
    status: int
    interval: int
    age: int

    @property
    def color(self) -> Optional[Color]:
        """Status display color, None for unknown status codes"""
        try:
            return Color(self.status)
        except ValueError:
            return None

    def toString(self, name=None, address=None, rssi=None):
        ret = "=======================================\n"
        if name:
            ret += f"  Name:     {name}\n"
        if address:
            ret += f"  Address:  {address}\n"
        if rssi is not None:
            ret += f"  RSSI:     {rssi} dBm\n"

        status = self.color.name if self.color is not None else self.status

        ret += "---------------------------------------\n"
        ret += f"  CO2:            {self.co2} ppm\n"
        ret += f"  Temperature:    {self.temperature:.01f} \u00b0C\n"
        ret += f"  Humidity:       {self.humidity} %\n"
        ret += f"  Pressure:       {self.pressure} hPa\n"
        ret += f"  Battery:        {self.battery} %\n"
        ret += f"  Status Display: {status}\n"
        ret += f"  Age:            {self.age}/{self.interval} s\n"
        return ret

    def toDict(self):
        return asdict(self)


def decode(data) -> SensorReading:
    """
    Decode a current readings record. Only the first 13 bytes are used,
    values are passed through without range checks.
    """
    try:
        value = struct.unpack_from(READINGS_FORMAT, data)
    except struct.error as e:
        raise DecodeError(
            f"readings need {READINGS_SIZE} bytes, got {len(data)}"
        ) from e

    co2, temperature, pressure, humidity, battery, status, interval, age = value
    return SensorReading(
        co2=co2,
        temperature=temperature / 20,
        pressure=pressure // 10,
        humidity=humidity,
        battery=battery,
        status=status,
        interval=interval,
        age=age,
    )


async def _first_adapter(adapter: Optional[str] = None) -> Optional[str]:
    """Return name of adapter to use. None means the platform default"""
    if adapter is not None:
        return adapter

    if platform.system() != "Linux":
        # CoreBluetooth and WinRT only expose the system adapter
        return None

    from bleak.backends.bluezdbus.manager import get_global_bluez_manager

    try:
        manager = await get_global_bluez_manager()
        path = manager.get_default_adapter()
    except (BleakError, OSError) as e:
        raise AdapterUnavailable() from e

    adapter = path.rsplit("/", 1)[-1]
    logger.debug("Using adapter %s", adapter)
    return adapter


def _adapter_kwargs(adapter: Optional[str]) -> dict:
    if adapter is None:
        return {}
    return {"adapter": adapter}


async def _find_by_name(adapter: Optional[str], config: Config) -> BLEDevice:
    try:
        async with BleakScanner(**_adapter_kwargs(adapter)) as scanner:
            await asyncio.sleep(config.settle_delay)
            discovered = list(scanner.discovered_devices_and_advertisement_data.values())
    except TRANSPORT_ERRORS as e:
        raise ConnectTransportError(e) from e

    for device, ad_data in discovered:
        # Local name may only be known from the advertisement
        name = ad_data.local_name or device.name
        if name and config.name_filter in name:
            logger.info("Found %s (%s)", name, device.address)
            return device

    logger.debug("Scanned %d devices, none matched", len(discovered))
    raise DeviceNotFound(config.name_filter)


async def connect(config: Optional[Config] = None) -> "Aranet4":
    """
    Find the first nearby Aranet4 and connect to it.
    Scans for `config.settle_delay` seconds before picking a device.
    """
    config = config or Config()
    adapter = await _first_adapter(config.adapter)
    device = await _find_by_name(adapter, config)

    client = BleakClient(
        device, timeout=config.connect_timeout, **_adapter_kwargs(adapter)
    )
    try:
        await client.connect()
    except TRANSPORT_ERRORS as e:
        raise ConnectTransportError(e) from e

    # bleak resolves services while connecting
    characteristic = client.services.get_characteristic(CHARACTERISTIC_CURRENT_READINGS)
    if characteristic is None:
        try:
            await client.disconnect()
        except TRANSPORT_ERRORS as e:
            logger.debug("Disconnect from %s failed: %s", device.address, e)
        raise CharacteristicNotFound(CHARACTERISTIC_CURRENT_READINGS)

    return Aranet4(device, client, characteristic, config)


class Aranet4:
    """
    Connected Aranet4 device. Created by `connect()`.
    Operations are not meant to run concurrently on one instance.
    """

    def __init__(self, device: BLEDevice, client: BleakClient, characteristic, config=None):
        self.device = device
        self.client = client
        self.characteristic = characteristic
        self.config = config or Config()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self.is_connected:
            await self.disconnect()

    @property
    def address(self) -> str:
        return self.device.address

    @property
    def name(self) -> Optional[str]:
        return self.device.name

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    async def read_data(self) -> SensorReading:
        """Read current measurements from remote device"""
        try:
            raw_bytes = await asyncio.wait_for(
                self.client.read_gatt_char(self.characteristic),
                self.config.read_timeout,
            )
        except TRANSPORT_ERRORS as e:
            raise SessionTransportError(e) from e
        return decode(raw_bytes)

    async def reconnect(self):
        """Connect to the same device again, keeping the resolved characteristic"""
        try:
            await self.client.connect()
        except TRANSPORT_ERRORS as e:
            raise SessionTransportError(e) from e

    async def disconnect(self):
        """Close connection. `reconnect()` can be used afterwards"""
        try:
            await self.client.disconnect()
        except TRANSPORT_ERRORS as e:
            raise SessionTransportError(e) from e


@dataclass(frozen=True)
class ScanResult:
    id: str
    sensor_data: SensorReading
    device: BLEDevice
    rssi: Optional[int] = None


class Watermarks:
    """
    Per device time before which advertisements are repeats of an already
    seen measurement. Times come from the scanner's clock.
    """

    def __init__(self):
        self._table: Dict[str, float] = {}

    def __len__(self):
        return len(self._table)

    def get(self, device_id: str) -> Optional[float]:
        return self._table.get(device_id)

    def accept(self, device_id: str, reading: SensorReading, now: float) -> bool:
        watermark = self._table.get(device_id)
        if watermark is not None and now < watermark:
            return False

        # age > interval would move the watermark into the past
        wait = max(reading.interval - reading.age, 0) + 1
        self._table[device_id] = now + wait
        return True


class Aranet4Scanner:
    """
    Aranet4 Scanner class - decode measurements from advertisements.
    Yields each measurement once, repeated advertisements are skipped.

        async with Aranet4Scanner() as scanner:
            async for result in scanner:
                ...
    """

    def __init__(self, config: Optional[Config] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or Config()
        self.watermarks = Watermarks()
        self._clock = clock
        # created in start(), inside the running event loop
        self._queue = None
        self._scanner = None
        self._stopped = False

    def _on_advertisement(self, device, ad_data):
        """bleak detection callback, processing happens in the consumer"""
        self._queue.put_nowait((device, ad_data, self._clock()))

    def process_advertisement(self, device, ad_data, now=None) -> Optional[ScanResult]:
        """
        Return scan result for new measurement, None if nothing new.
        `now` is the time the advertisement was received, defaults to the clock.
        """
        raw_bytes = ad_data.manufacturer_data.get(MANUFACTURER_ID)
        if raw_bytes is None:
            return None

        try:
            reading = decode(raw_bytes[ADVERTISEMENT_HEADER_SIZE:])
        except DecodeError as e:
            logger.debug("Ignoring advertisement from %s: %s", device.address, e)
            return None

        if now is None:
            now = self._clock()
        if not self.watermarks.accept(device.address, reading, now):
            logger.debug("Skipping repeated measurement from %s", device.address)
            return None

        return ScanResult(
            id=device.address,
            sensor_data=reading,
            device=device,
            rssi=getattr(ad_data, "rssi", None),
        )

    async def start(self):
        if self._stopped:
            raise Aranet4Error("scanner can not be restarted")

        adapter = await _first_adapter(self.config.adapter)
        self._queue = asyncio.Queue()
        try:
            self._scanner = BleakScanner(
                detection_callback=self._on_advertisement,
                service_uuids=[SERVICE_SAF_TEHNIKA],
                **_adapter_kwargs(adapter)
            )
            await self._scanner.start()
        except TRANSPORT_ERRORS as e:
            self._scanner = None
            self._stopped = True
            raise ConnectTransportError(e) from e

        try:
            await asyncio.sleep(self.config.settle_delay)
        except BaseException:
            await self.stop()
            raise

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        if self._queue is not None:
            # wake up a consumer waiting for the next advertisement
            self._queue.put_nowait(None)
        if self._scanner is not None:
            try:
                await self._scanner.stop()
            except TRANSPORT_ERRORS as e:
                raise ConnectTransportError(e) from e

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ScanResult:
        if self._queue is None and not self._stopped:
            raise Aranet4Error("scanner not started")
        while not self._stopped:
            event = await self._queue.get()
            if event is None:
                break
            result = self.process_advertisement(*event)
            if result is not None:
                return result
        raise StopAsyncIteration


async def scan(config: Optional[Config] = None):
    """
    Endless stream of new measurements from nearby devices.
    Closing the generator or cancelling the consumer stops scanning.
    """
    async with Aranet4Scanner(config) as scanner:
        async for result in scanner:
            yield result


async def _current_reading(config):
    async with await connect(config) as monitor:
        return await monitor.read_data()


def get_current_readings(config: Optional[Config] = None) -> SensorReading:
    """Get from the device the current measurements"""
    return asyncio.run(_current_reading(config))


async def _find_nearby(on_scan, duration, config) -> List[ScanResult]:
    found = {}

    async def collect():
        async with Aranet4Scanner(config) as scanner:
            async for result in scanner:
                found[result.id] = result
                if on_scan:
                    on_scan(result)

    try:
        await asyncio.wait_for(collect(), duration)
    except asyncio.TimeoutError:
        pass
    return list(found.values())


def find_nearby(on_scan: Optional[Callable] = None, duration: Optional[float] = 5,
                config: Optional[Config] = None) -> List[ScanResult]:
    """
    Scans for nearby Aranet4 devices for `duration` seconds (None for no limit).
    Will call callback on every new measurement. Returns the latest
    result of every device seen.
    """
    return asyncio.run(_find_nearby(on_scan, duration, config))
