import asyncio
import logging
from typing import Any, Dict

import tinytuya

# tinytuya listens for roughly one broadcast interval per retry
DEFAULT_SCAN_RETRIES = 6


def scan(retries: int = DEFAULT_SCAN_RETRIES) -> Dict[str, Dict[str, Any]]:
    """
    Listen for Tuya UDP broadcasts on the local network.

    :param retries: listening rounds, passed to ``deviceScan`` as ``maxretry``
    :return: {gwId: {"ip", "version", "product_key"}}
    :rtype: dict
    """
    found = tinytuya.deviceScan(verbose=False, maxretry=retries,
                                color=False, poll=False)
    devices = {}
    for key, info in found.items():
        device_id = info.get("gwId") or info.get("id") or key
        devices[device_id] = {
            "ip": info.get("ip") or key,
            "version": info.get("version"),
            "product_key": info.get("productKey"),
        }
    return devices


class Discover:

    @staticmethod
    async def discover(logger: logging.Logger = None,
                       retries: int = None) -> Dict[str, Dict[str, Any]]:
        """
        Scan without blocking the event loop.

        :return: {gwId: {"ip", "version", "product_key"}}
        """
        if logger is None:
            logger = logging.getLogger(__name__)
        if retries is None:
            retries = DEFAULT_SCAN_RETRIES

        logger.debug("Looking for all Tuya devices on local network.")
        loop = asyncio.get_running_loop()
        devices = await loop.run_in_executor(None, scan, retries)

        for device_id, info in devices.items():
            logger.info("Found Tuya device %s at %s (v%s)", device_id,
                        info["ip"], info["version"])
        return devices
