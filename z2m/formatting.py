"""
z2m-poly NodeServer/Plugin for EISY/Polisy

(C) 2025

module formatting

Read-time views layered on top of a device's cached values: a display
view with units, and a HomeKit characteristic view.
"""

# std libraries
from typing import Any, Dict, Optional


def _units(item: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Map property name to unit from the item's exposes."""
    units: Dict[str, str] = {}
    definition = (item or {}).get('definition') or {}

    def walk(exposes):
        for exp in exposes or []:
            if not isinstance(exp, dict):
                continue
            if 'features' in exp:
                walk(exp['features'])
            name = exp.get('property') or exp.get('name')
            if name and exp.get('unit'):
                units[name] = exp['unit']

    walk(definition.get('exposes'))
    return units


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float):
        return f'{value:g}'
    if value is None:
        return ''
    return str(value)


def format_payload(values: Any, item: Optional[Dict[str, Any]] = None) -> Any:
    """Render cached values for display.

    Args:
        values: Cached value bag (dict) or scalar.
        item: Device or group record providing exposes and power source.

    Returns:
        Dict of property to display string for object values; scalar
        values are rendered as a single string.
    """
    if not isinstance(values, dict):
        return format_value(values)
    units = _units(item)
    formatted = {}
    for key, value in values.items():
        if isinstance(value, (dict, list)):
            continue
        text = format_value(value)
        if key in units:
            text = f'{text} {units[key]}'
        formatted[key] = text
    if (item or {}).get('power_source') == 'Battery' and 'battery' in values and 'battery' not in units:
        formatted['battery'] = f"{format_value(values['battery'])}%"
    return formatted


def _on(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.upper() in ('ON', 'OFF'):
        return value.upper() == 'ON'
    return None


def payload_to_homekit(values: Any) -> Dict[str, Any]:
    """Translate Zigbee2MQTT values into HomeKit service characteristics."""
    if not isinstance(values, dict):
        return {}
    homekit: Dict[str, Any] = {}

    state = _on(values.get('state'))
    if state is not None:
        if 'brightness' in values or 'color_temp' in values or 'color' in values:
            bulb: Dict[str, Any] = {'On': state}
            if isinstance(values.get('brightness'), (int, float)):
                bulb['Brightness'] = round(values['brightness'] / 2.55)
            if isinstance(values.get('color_temp'), (int, float)):
                # HomeKit accepts 140..500 mired
                bulb['ColorTemperature'] = max(140, min(500, int(values['color_temp'])))
            color = values.get('color')
            if isinstance(color, dict) and 'hue' in color:
                bulb['Hue'] = color.get('hue')
                bulb['Saturation'] = color.get('saturation')
            homekit['Lightbulb'] = bulb
        else:
            homekit['Switch'] = {'On': state}
            homekit['Outlet'] = {'On': state, 'OutletInUse': state}

    if isinstance(values.get('temperature'), (int, float)):
        homekit['TemperatureSensor'] = {'CurrentTemperature': values['temperature']}
    if isinstance(values.get('humidity'), (int, float)):
        homekit['HumiditySensor'] = {'CurrentRelativeHumidity': values['humidity']}
    if 'contact' in values:
        homekit['ContactSensor'] = {'ContactSensorState': 0 if values['contact'] else 1}
    if 'occupancy' in values:
        homekit['MotionSensor'] = {'MotionDetected': bool(values['occupancy'])}
    if 'water_leak' in values:
        homekit['LeakSensor'] = {'LeakDetected': 1 if values['water_leak'] else 0}
    lux = values.get('illuminance_lux', values.get('illuminance'))
    if isinstance(lux, (int, float)):
        # HomeKit minimum is 0.0001 lux
        homekit['LightSensor'] = {'CurrentAmbientLightLevel': max(0.0001, lux)}
    if isinstance(values.get('battery'), (int, float)):
        homekit['Battery'] = {
            'BatteryLevel': values['battery'],
            'StatusLowBattery': 1 if values['battery'] <= 10 else 0,
        }
    if isinstance(values.get('position'), (int, float)):
        homekit['WindowCovering'] = {
            'CurrentPosition': values['position'],
            'TargetPosition': values['position'],
            'PositionState': 2,
        }
    if values.get('lock_state') in ('locked', 'unlocked'):
        locked = values['lock_state'] == 'locked'
        homekit['LockMechanism'] = {
            'LockCurrentState': 1 if locked else 0,
            'LockTargetState': 1 if locked else 0,
        }
    return homekit
