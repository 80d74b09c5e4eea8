import asyncio
import logging
from typing import Any, Callable

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException
from pymodbus.pdu.pdu import ModbusPDU

from meter_sync.device.bacnet.reader_base import DataPointReader
from meter_sync.device.modbus.register_decoder import decode_registers
from meter_sync.device.modbus.register_range import RegisterRange, build_register_ranges
from meter_sync.exception import BatchReadTimeoutError, DeviceConnectionError, DeviceTimeoutError
from meter_sync.model.enum.register_type_enum import RegisterType
from meter_sync.schema.sync_config_schema import MeterDeviceSchema, RegisterSchema

logger = logging.getLogger("ModbusDataPointReader")

ClientFactory = Callable[[str, int], AsyncModbusTcpClient]


def default_client_factory(host: str, port: int) -> AsyncModbusTcpClient:
    # Retries are handled by the read coordinator, not by pymodbus
    return AsyncModbusTcpClient(host, port=port, timeout=3, retries=0)


class ModbusDataPointReader(DataPointReader):
    """
    Data point reader for meters exposed over Modbus-TCP (directly or through a
    BACnet/Modbus gateway).

    One client per host:port, shared by every device behind it and serialized
    with a per-endpoint asyncio.Lock. A multi-point read is split into
    contiguous register ranges that are fetched under one shared deadline, so
    ranges that completed before a timeout are returned as partial values.
    """

    def __init__(self, client_factory: ClientFactory | None = None, max_regs_per_req: int = 120):
        self._client_factory = client_factory or default_client_factory
        self._max_regs_per_req = max_regs_per_req
        self._clients: dict[tuple[str, int], AsyncModbusTcpClient] = {}
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}

    async def read_property(self, device: MeterDeviceSchema, register: str, timeout_sec: float) -> Any:
        try:
            values = await self.read_property_multiple(device, [register], timeout_sec)
        except BatchReadTimeoutError as e:
            raise DeviceTimeoutError(f"{device.device_id}.{register} read timed out", device.device_id) from e
        return values.get(register)

    async def read_property_multiple(
        self, device: MeterDeviceSchema, registers: list[str], timeout_sec: float
    ) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec

        reg_by_name: dict[str, RegisterSchema] = {r.data_point: r for r in device.registers}
        selected = [reg_by_name[name] for name in registers if name in reg_by_name]
        values: dict[str, Any] = {name: None for name in registers if name not in reg_by_name}

        ranges = build_register_ranges(selected, self._max_regs_per_req)
        key = (device.host, device.port)
        client = self._get_client(key)
        lock = self._locks.setdefault(key, asyncio.Lock())

        try:
            await asyncio.wait_for(lock.acquire(), timeout=max(0.0, deadline - loop.time()))
        except TimeoutError:
            raise BatchReadTimeoutError(f"{device.device_id}: endpoint busy", device.device_id, values) from None

        try:
            await self._ensure_connected(client, device, deadline - loop.time())

            for rng in ranges:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise BatchReadTimeoutError(f"{device.device_id}: batch read timed out", device.device_id, values)
                try:
                    resp = await asyncio.wait_for(self._read_range(client, device, rng), timeout=remaining)
                except TimeoutError:
                    raise BatchReadTimeoutError(
                        f"{device.device_id}: batch read timed out", device.device_id, values
                    ) from None
                except ModbusException as e:
                    raise DeviceConnectionError(f"{device.device_id}: modbus error: {e}", device.device_id) from e

                values.update(self._decode_range(rng, resp))
        finally:
            lock.release()

        return values

    async def close(self) -> None:
        for (host, port), client in self._clients.items():
            try:
                client.close()
            except Exception as e:
                logger.warning(f"[Modbus] close {host}:{port} failed: {e}")
        self._clients.clear()

    # ------------------------------------------------------------------

    def _get_client(self, key: tuple[str, int]) -> AsyncModbusTcpClient:
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(*key)
            self._clients[key] = client
        return client

    @staticmethod
    async def _ensure_connected(client: AsyncModbusTcpClient, device: MeterDeviceSchema, timeout_sec: float) -> None:
        if client.connected:
            return
        try:
            ok = await asyncio.wait_for(client.connect(), timeout=max(0.0, timeout_sec))
        except TimeoutError:
            raise DeviceConnectionError(
                f"{device.device_id}: connect to {device.host}:{device.port} timed out", device.device_id
            ) from None
        except (OSError, ModbusException) as e:
            raise DeviceConnectionError(f"{device.device_id}: connect failed: {e}", device.device_id) from e
        if not ok:
            raise DeviceConnectionError(
                f"{device.device_id}: connect to {device.host}:{device.port} failed", device.device_id
            )

    @staticmethod
    async def _read_range(client: AsyncModbusTcpClient, device: MeterDeviceSchema, rng: RegisterRange) -> ModbusPDU:
        if rng.register_type == RegisterType.INPUT:
            return await client.read_input_registers(address=rng.start, count=rng.count, device_id=device.unit_id)
        return await client.read_holding_registers(address=rng.start, count=rng.count, device_id=device.unit_id)

    @staticmethod
    def _decode_range(rng: RegisterRange, resp: ModbusPDU) -> dict[str, Any]:
        if resp.isError():
            return {reg.data_point: {"error": f"modbus exception response: {resp}"} for reg in rng.items}

        words = getattr(resp, "registers", None)
        if not isinstance(words, list):
            return {reg.data_point: None for reg in rng.items}

        result: dict[str, Any] = {}
        for reg in rng.items:
            offset = reg.address - rng.start
            chunk = words[offset : offset + reg.format.word_count]
            try:
                result[reg.data_point] = decode_registers(chunk, reg.format) * reg.scale
            except ValueError as e:
                result[reg.data_point] = {"error": str(e)}
        return result
