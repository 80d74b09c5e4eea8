import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from meter_sync.device.modbus.modbus_reader import ModbusDataPointReader
from meter_sync.device.modbus.register_decoder import decode_registers
from meter_sync.device.modbus.register_range import build_register_ranges
from meter_sync.exception import BatchReadTimeoutError, DeviceConnectionError, DeviceTimeoutError
from meter_sync.model.enum.decode_format import DecodeFormat
from meter_sync.model.enum.register_type_enum import RegisterType
from meter_sync.schema.sync_config_schema import MeterDeviceSchema, RegisterSchema


def _device(registers: list[RegisterSchema]) -> MeterDeviceSchema:
    return MeterDeviceSchema(device_id="MTR-9", host="10.0.0.9", port=502, unit_id=7, registers=registers)


def _response(words: list[int], is_error: bool = False):
    resp = Mock()
    resp.isError.return_value = is_error
    resp.registers = words
    return resp


def _client(connected: bool = True) -> Mock:
    client = Mock()
    client.connected = connected
    client.connect = AsyncMock(return_value=True)
    client.read_holding_registers = AsyncMock()
    client.read_input_registers = AsyncMock()
    return client


class TestDecodeRegisters:
    def test_f32_big_endian(self):
        assert decode_registers([0x4148, 0x0000], DecodeFormat.F32) == pytest.approx(12.5)

    def test_u32_little_word_order(self):
        assert decode_registers([0x0001, 0x0002], "u32_le") == 0x00020001

    def test_u32_big_word_order(self):
        assert decode_registers([0x0001, 0x0002], "u32_be") == 0x00010002

    def test_i16_negative(self):
        assert decode_registers([0xFFFF], "int16") == -1

    def test_u16(self):
        assert decode_registers([1234], DecodeFormat.U16) == 1234

    def test_when_too_few_words_then_raises(self):
        with pytest.raises(ValueError):
            decode_registers([0x4148], DecodeFormat.F32)


class TestBuildRegisterRanges:
    def test_when_registers_contiguous_then_merged(self):
        regs = [
            RegisterSchema(data_point="v1", address=0, format="f32"),
            RegisterSchema(data_point="v2", address=2, format="f32"),
            RegisterSchema(data_point="hz", address=4, format="u16"),
        ]

        ranges = build_register_ranges(regs)

        assert len(ranges) == 1
        assert (ranges[0].start, ranges[0].count) == (0, 5)
        assert [r.data_point for r in ranges[0].items] == ["v1", "v2", "hz"]

    def test_when_gap_or_type_changes_then_split(self):
        regs = [
            RegisterSchema(data_point="kwh", address=100, format="u32"),
            RegisterSchema(data_point="v1", address=0, format="f32"),
            RegisterSchema(data_point="kw", address=0, register_type="input", format="i16"),
        ]

        ranges = build_register_ranges(regs)

        assert [(r.register_type, r.start, r.count) for r in ranges] == [
            (RegisterType.HOLDING, 0, 2),
            (RegisterType.HOLDING, 100, 2),
            (RegisterType.INPUT, 0, 1),
        ]

    def test_when_range_too_long_then_split_at_limit(self):
        regs = [RegisterSchema(data_point=f"r{i}", address=i, format="u16") for i in range(10)]

        ranges = build_register_ranges(regs, max_regs_per_req=4)

        assert [r.count for r in ranges] == [4, 4, 2]


class TestModbusDataPointReader:
    @pytest.mark.asyncio
    async def test_when_read_multiple_then_decodes_and_scales(self):
        # Arrange
        client = _client()
        client.read_holding_registers.return_value = _response([0x4148, 0x0000, 250])
        reader = ModbusDataPointReader(client_factory=lambda host, port: client)
        device = _device(
            [
                RegisterSchema(data_point="voltage", address=0, format="f32"),
                RegisterSchema(data_point="temp", address=2, format="u16", scale=0.1),
            ]
        )

        # Act
        values = await reader.read_property_multiple(device, ["voltage", "temp", "unknown"], timeout_sec=1.0)

        # Assert
        assert values["voltage"] == pytest.approx(12.5)
        assert values["temp"] == pytest.approx(25.0)
        assert values["unknown"] is None
        client.read_holding_registers.assert_awaited_once_with(address=0, count=3, device_id=7)

    @pytest.mark.asyncio
    async def test_when_second_range_hangs_then_timeout_carries_first_range(self):
        # Arrange
        client = _client()

        async def slow_read(**kwargs):
            await asyncio.sleep(5)

        client.read_holding_registers.return_value = _response([0x4148, 0x0000])
        client.read_input_registers.side_effect = slow_read
        reader = ModbusDataPointReader(client_factory=lambda host, port: client)
        device = _device(
            [
                RegisterSchema(data_point="voltage", address=0, format="f32"),
                RegisterSchema(data_point="power", address=10, register_type="input", format="i16"),
            ]
        )

        # Act
        with pytest.raises(BatchReadTimeoutError) as exc_info:
            await reader.read_property_multiple(device, ["voltage", "power"], timeout_sec=0.1)

        # Assert
        assert exc_info.value.partial_values == {"voltage": pytest.approx(12.5)}
        assert exc_info.value.device_id == "MTR-9"

    @pytest.mark.asyncio
    async def test_when_modbus_error_response_then_value_is_error_marker(self):
        client = _client()
        client.read_holding_registers.return_value = _response([], is_error=True)
        reader = ModbusDataPointReader(client_factory=lambda host, port: client)
        device = _device([RegisterSchema(data_point="voltage", address=0, format="f32")])

        values = await reader.read_property_multiple(device, ["voltage"], timeout_sec=1.0)

        assert "error" in values["voltage"]

    @pytest.mark.asyncio
    async def test_when_connect_fails_then_raises_connection_error(self):
        client = _client(connected=False)
        client.connect.return_value = False
        reader = ModbusDataPointReader(client_factory=lambda host, port: client)
        device = _device([RegisterSchema(data_point="voltage", address=0, format="f32")])

        with pytest.raises(DeviceConnectionError):
            await reader.read_property_multiple(device, ["voltage"], timeout_sec=1.0)

    @pytest.mark.asyncio
    async def test_when_single_read_times_out_then_raises_device_timeout(self):
        client = _client()

        async def slow_read(**kwargs):
            await asyncio.sleep(5)

        client.read_holding_registers.side_effect = slow_read
        reader = ModbusDataPointReader(client_factory=lambda host, port: client)
        device = _device([RegisterSchema(data_point="voltage", address=0, format="f32")])

        with pytest.raises(DeviceTimeoutError):
            await reader.read_property(device, "voltage", timeout_sec=0.05)

    @pytest.mark.asyncio
    async def test_when_check_connectivity_then_reads_first_point(self):
        client = _client()
        client.read_holding_registers.return_value = _response([0x4148, 0x0000])
        reader = ModbusDataPointReader(client_factory=lambda host, port: client)
        device = _device([RegisterSchema(data_point="voltage", address=0, format="f32")])

        assert await reader.check_connectivity(device, timeout_sec=1.0) is True

    @pytest.mark.asyncio
    async def test_when_devices_share_endpoint_then_client_reused_and_closed_once(self):
        client = _client()
        factory = Mock(return_value=client)
        client.read_holding_registers.return_value = _response([1])
        reader = ModbusDataPointReader(client_factory=factory)
        device = _device([RegisterSchema(data_point="a", address=0, format="u16")])

        await reader.read_property_multiple(device, ["a"], timeout_sec=1.0)
        await reader.read_property_multiple(device, ["a"], timeout_sec=1.0)
        await reader.close()

        factory.assert_called_once_with("10.0.0.9", 502)
        client.close.assert_called_once()
