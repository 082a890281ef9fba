from __future__ import annotations

from pathlib import Path

from canflash.api import Client, UploadStage, checksum

from conftest import FakeBootloader


def test_public_client_list_profiles(bootloader: FakeBootloader) -> None:
    client = Client(transport=bootloader)
    profiles = client.list_profiles()
    assert profiles
    assert any(p.id == "default" for p in profiles)
    assert client.profile.id == "default"


def test_public_client_upload(tmp_path: Path, bootloader: FakeBootloader) -> None:
    data = b"\x10\x20\x30\x40\x50\x60"
    bootloader.reported_checksum = checksum(data)
    path = tmp_path / "app.bin"
    path.write_bytes(data)

    with Client(transport=bootloader) as client:
        assert client.upload_image(path) is True
        assert client.last_report is not None
        assert client.last_report.stage is UploadStage.VERIFIED
    assert bootloader.closed


def test_public_client_checksum_and_target(bootloader: FakeBootloader) -> None:
    bootloader.reported_checksum = 0x01020304
    client = Client(transport=bootloader)
    client.set_target_identifier(0x02)
    assert client.query_checksum() == 0x01020304
    assert client.target_id == 0x02
    assert bootloader.sent[0].address >> 7 == 0x02
