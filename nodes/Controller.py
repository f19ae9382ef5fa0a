"""Zigbee2MQTT Polyglot NodeServer for EISY/Polisy.

This module provides the Controller class for the z2m-poly NodeServer,
which bridges a Zigbee2MQTT gateway into the EISY/Polisy home automation
system through the Polyglot interface.

The Controller loads the broker configuration, owns the ServerController
for the gateway, and creates one node for the bridge plus one per Zigbee
device and group.

Author: Stephen Jenkins
Copyright: (C) 2025 Stephen Jenkins
"""

# std libraries
import logging
from threading import Event, Condition
from typing import Any, Dict, List, Optional

# external libraries
import yaml
from udi_interface import Node, LOGGER, Custom, LOG_HANDLER

# personal libraries
from z2m.server import ServerController
from z2m.events import CONNECTIVITY, BRIDGE_STATE

# Nodes
from nodes.Z2MBridge import Z2MBridge, BRIDGE_STATE_INDEX
from nodes.Z2MDevice import Z2MDevice
from nodes.Z2MGroup import Z2MGroup

DEFAULT_CONFIG = {
    'mqtt_server': 'localhost',
    'mqtt_port': 1883,
    'mqtt_user': None,
    'mqtt_password': None,
    'base_topic': 'zigbee2mqtt',
    'mqtt_qos': 0,
    'mqtt_tls': False,
    'mqtt_tls_insecure': False,
}

BRIDGE_ADDRESS = 'z2mbridge'
GROUP_ADDRESS_PREFIX = 'z2mgrp'



class Controller(Node):
    """Controller class for the Zigbee2MQTT Polyglot NodeServer.

    Attributes:
        id (str): Unique identifier for the controller node ('z2mctrl').
        hb (int): Heartbeat counter for monitoring controller status.
        numNodes (int): Number of bridge, device and group nodes.
        n_queue (list): Queue for tracking node creation completion.
        queue_condition (Condition): Threading condition for node queue synchronization.
        ready_event (Event): Event signaling when controller is ready for operation.
        all_handlers_st_event (Event): Event signaling when all handlers are complete.
        discovery_in (bool): Flag indicating if discovery is currently in progress.
        server (ServerController): Connection and state cache for the gateway.
        general (dict): General section of the optional YAML config file.
    """
    id = 'z2mctrl'

    def __init__(self, poly, primary, address, name):
        """Initialize the Controller node.

        Args:
            poly: Polyglot interface instance for communication with EISY/Polisy.
            primary: Primary node address (typically the controller itself).
            address: Unique address for this controller node.
            name: Human-readable name for the controller node.
        """
        super().__init__(poly, primary, address, name)

        # importand flags, timers, vars
        self.hb = 0 # heartbeat
        self.numNodes = 0

        # storage arrays & conditions
        self.n_queue = []
        self.queue_condition = Condition()

        # Events
        self.ready_event = Event()
        self.all_handlers_st_event = Event()
        self.discovery_in = False

        # startup completion flags
        self.handler_params_st = None
        self.handler_data_st = None
        self.handler_typedparams_st = None
        self.handler_typeddata_st = None

        self.server: Optional[ServerController] = None
        self.server_subs = []
        self.general: Dict[str, Any] = {}
        self.mqtt_config: Dict[str, Any] = {}

        # Create data storage classes
        self.Notices         = Custom(poly, 'notices')
        self.Parameters      = Custom(poly, 'customparams')
        self.Data            = Custom(poly, 'customdata')
        self.TypedParameters = Custom(poly, 'customtypedparams')
        self.TypedData       = Custom(poly, 'customtypeddata')

        # Subscribe to various events from the Interface class.
        self.poly.subscribe(self.poly.START,             self.start, address)
        self.poly.subscribe(self.poly.POLL,              self.poll)
        self.poly.subscribe(self.poly.LOGLEVEL,          self.handleLevelChange)
        self.poly.subscribe(self.poly.CUSTOMPARAMS,      self.parameterHandler)
        self.poly.subscribe(self.poly.CUSTOMDATA,        self.dataHandler)
        self.poly.subscribe(self.poly.STOP,              self.stop)
        self.poly.subscribe(self.poly.DISCOVER,          self.discover_cmd)
        self.poly.subscribe(self.poly.CUSTOMTYPEDDATA,   self.typedDataHandler)
        self.poly.subscribe(self.poly.CUSTOMTYPEDPARAMS, self.typedParameterHandler)
        self.poly.subscribe(self.poly.ADDNODEDONE,       self.node_queue)

        # Tell the interface we have subscribed to all the events we need.
        # Once we call ready(), the interface will start publishing data.
        self.poly.ready()

        # Tell the interface we exist.
        self.poly.addNode(self, conn_status='ST')


    def start(self):
        """Initialize and start the NodeServer.

        The startup process includes:
        1. Clearing notices and setting initial status
        2. Updating the ISY profile if necessary
        3. Waiting for all handlers to complete initialization
        4. Loading the broker configuration
        5. Starting the ServerController (MQTT connection)
        6. Discovering bridge, device and group nodes
        7. Signaling readiness to child nodes
        """
        LOGGER.info(f"Zigbee2MQTT PG3 NodeServer {self.poly.serverdata['version']}")
        self.Notices.clear()
        self.Notices['hello'] = 'Start-up'
        self.setDriver('ST', 1, report = True, force = True)

        # Send the profile files to the ISY if neccessary or version changed.
        self.poly.updateProfile()

        # Send the default custom parameters documentation file to Polyglot
        self.poly.setCustomParamsDoc()

        # Initializing a heartbeat
        self.heartbeat()

        # Wait for all handlers to finish
        LOGGER.warning('Waiting for all handlers to complete...')
        self.Notices['waiting'] = 'Waiting on valid configuration'
        self.all_handlers_st_event.wait(timeout=60)
        if not self.all_handlers_st_event.is_set():
            LOGGER.error("Timed out waiting for handlers to startup")
            self.setDriver('ST', 2) # start-up failed
            self.Notices['error'] = 'Error start-up timeout.  Check config & restart'
            return

        if not self.checkParams():
            LOGGER.error(f'Configuration invalid!!! exit {self.name}')
            self.Notices['error'] = 'Error in configuration.  Check config & restart'
            self.setDriver('ST', 2)
            return

        if not self._server_start():
            LOGGER.error(f'MQTT connection failed!!! exit {self.name}')
            self.Notices['error'] = 'Error MQTT connection.  Check config & restart'
            self.setDriver('ST', 2)
            return

        if not self.discover_cmd():
            # not fatal, the gateway may just be slow; DISCOVER can be retried
            self.Notices['discover'] = 'No device list from Zigbee2MQTT yet, run Discover'

        self.Notices.delete('waiting')
        LOGGER.info('Started Zigbee2MQTT NodeServer v%s', self.poly.serverdata)
        self.query(command = f"{self.name}: STARTUP")

        # signal to the nodes, its ok to start
        self.ready_event.set()

        # clear inital start-up message
        if self.Notices.get('hello'):
            self.Notices.delete('hello')

        LOGGER.info(f'exit {self.name}')


    def _server_start(self) -> bool:
        """Create the ServerController and connect to the broker.

        The topology snapshot is persisted in customdata so device queries
        work before the gateway re-publishes after a restart.

        Returns:
            bool: False if the connection could not be attempted.
        """
        if self.server is not None:
            self._server_stop()
        self.server = ServerController(self.mqtt_config, storage=self.Data, name=self.address)
        self.server_subs = [
            self.server.on(CONNECTIVITY, self._on_connectivity),
            self.server.on(BRIDGE_STATE, self._on_bridge_state),
        ]
        if not self.server.start():
            self.Notices['mqtt'] = 'Error on user MQTT connection'
            return False
        return True


    def _server_stop(self):
        for sub in self.server_subs:
            sub.cancel()
        self.server_subs = []
        if self.server is not None:
            self.server.close()
            self.server = None


    def _on_connectivity(self, event):
        """Reflect broker connectivity on GV1, with a notice while down."""
        self.setDriver('GV1', 1 if event.connected else 0)
        if event.connected:
            if self.Notices.get('mqtt'):
                self.Notices.delete('mqtt')
        else:
            self.Notices['mqtt'] = 'Waiting on user MQTT connection'
        self.setDriver('GV2', BRIDGE_STATE_INDEX.get(self.server.bridge_state, 0))


    def _on_bridge_state(self, event):
        if event.changed:
            LOGGER.info(f"Bridge {'online' if event.online else 'offline'}")
        self.setDriver('GV2', BRIDGE_STATE_INDEX.get(self.server.bridge_state, 0))


    def node_queue(self, data):
        """Handle node creation completion notification.

        The node_queue() and wait_for_node_done() methods work together so
        discovery can wait for the asynchronous addNode() to finish before
        adding the next node.

        Args:
            data (dict): Event data containing the node address.
        """
        address = data.get('address')
        if address:
            with self.queue_condition:
                self.n_queue.append(address)
                self.queue_condition.notify()

    def wait_for_node_done(self):
        """Block until a node creation has been confirmed."""
        with self.queue_condition:
            while not self.n_queue:
                self.queue_condition.wait(timeout = 0.2)
            self.n_queue.pop()


    def dataHandler(self, data):
        """Handle custom data loading from Polyglot.

        Custom data carries the persisted device and group topology.
        """
        LOGGER.debug('enter: Loading data')
        if data is None:
            LOGGER.warning("No custom data")
        else:
            self.Data.load(data)
        self.handler_data_st = True
        self.check_handlers()


    def parameterHandler(self, params):
        """Handle custom parameters from Polyglot dashboard."""
        LOGGER.info('parmHandler: Loading parameters now')
        self.Parameters.load(params)
        self.handler_params_st = True
        self.check_handlers()
        LOGGER.info('parmHandler Done...')


    def typedParameterHandler(self, params):
        LOGGER.debug('Loading typed parameters now')
        self.TypedParameters.load(params)
        LOGGER.debug(params)
        self.handler_typedparams_st = True
        self.check_handlers()


    def typedDataHandler(self, data):
        LOGGER.debug('Loading typed data now')
        if data is None:
            LOGGER.warning("No custom data")
        else:
            self.TypedData.load(data)
        LOGGER.debug(f'Loaded typed data {data}')
        self.handler_typeddata_st = True
        self.check_handlers()


    def check_handlers(self):
        """Set all_handlers_st_event once every startup handler has run."""
        if (self.handler_params_st and self.handler_data_st and
            self.handler_typedparams_st and self.handler_typeddata_st):
            self.all_handlers_st_event.set()


    def checkParams(self):
        """Load and validate configuration parameters.

        An optional YAML file named by the `configfile` parameter supplies
        a `general` section used as a fallback for any parameter not set in
        the Polyglot dashboard.

        Returns:
            bool: True if configuration loaded successfully, False otherwise.
        """
        self.general = {}
        if self.Parameters.get("configfile"):
            if not self._load_configfile():
                return False
        return self._load_mqtt_parameters()


    def _load_configfile(self):
        """Load the `general` section of the YAML config file.

        The section may be a mapping or, as in older files, a list of
        single-key mappings which is flattened.

        Returns:
            bool: True if configuration loaded successfully, False otherwise.
        """
        path = self.Parameters["configfile"]
        if not path or not isinstance(path, str):
            LOGGER.error("Invalid configfile path provided")
            return False

        try:
            with open(path, 'r', encoding='utf-8') as file:
                config_yaml = yaml.safe_load(file) or {}
        except (OSError, yaml.YAMLError) as ex:
            error_type = "open" if isinstance(ex, OSError) else "parse"
            LOGGER.error(f"Failed to {error_type} {path}: {ex}")
            return False

        if not isinstance(config_yaml, dict):
            LOGGER.error(f"Config file {path} must be a mapping")
            return False
        general = config_yaml.get("general", {})
        if isinstance(general, list):
            general = {k: v for d in general for k, v in d.items()}
        if not isinstance(general, dict):
            LOGGER.error(f"Config file {path} has an invalid general section")
            return False
        LOGGER.info(f"general = {general}")
        self.general = general
        return True


    def _load_mqtt_parameters(self) -> bool:
        """Load MQTT connection parameters with fallback hierarchy.

        1. Parameters from Polyglot interface
        2. General configuration from the config file
        3. Default configuration values

        Returns:
            bool: True if parameters loaded successfully, False otherwise.
        """
        def pick(key):
            return (self.Parameters.get(key), self.general.get(key), DEFAULT_CONFIG.get(key))

        try:
            self.mqtt_config = {
                'host': self._get_str(*pick("mqtt_server")),
                'port': self._get_int(*pick("mqtt_port")),
                'user': self._get_str(*pick("mqtt_user")),
                'password': self._get_str(*pick("mqtt_password")),
                'base_topic': self._get_str(*pick("base_topic")),
                'qos': self._get_int(*pick("mqtt_qos")),
                'tls': self._get_bool(*pick("mqtt_tls")),
                'tls_insecure': self._get_bool(*pick("mqtt_tls_insecure")),
            }
        except (ValueError, TypeError) as ex:
            LOGGER.error(f"Failed to parse MQTT parameters: {ex}")
            return False
        LOGGER.info(f"MQTT {self.mqtt_config['host']}:{self.mqtt_config['port']} "
                    f"base topic {self.mqtt_config['base_topic']}")
        return True


    def _get_str(*args: Optional[Any]) -> Optional[str]:
        """Return the first argument that is a non-empty string, else None."""
        for val in args:
            if isinstance(val, str) and val:
                return val
        return None

    def _get_int(*args: Optional[Any]) -> Optional[int]:
        """Return the first argument that is or parses as an integer, else None."""
        for val in args:
            if isinstance(val, int) and not isinstance(val, bool):
                return val
            if isinstance(val, str) and val.isdigit():
                return int(val)
        return None

    def _get_bool(*args: Optional[Any]) -> bool:
        """Return the first boolean-like argument, else False."""
        for val in args:
            if isinstance(val, bool):
                return val
            if isinstance(val, str) and val.strip().lower() in ('true', 'false', 'yes', 'no', '1', '0'):
                return val.strip().lower() in ('true', 'yes', '1')
        return False


    def handleLevelChange(self, level):
        """Handle log level changes from Polyglot."""
        LOGGER.info(f'enter: level={level}')
        if level['level'] < 10:
            LOGGER.info("Setting basic config to DEBUG...")
            LOG_HANDLER.set_basic_config(True,logging.DEBUG)
        else:
            LOGGER.info("Setting basic config to WARNING...")
            LOG_HANDLER.set_basic_config(True,logging.WARNING)
        LOGGER.info(f'exit: level={level}')


    def poll(self, flag):
        """Send the heartbeat on short poll once start-up is done."""
        if not self.ready_event.is_set():
            LOGGER.debug("Node not ready yet, exiting")
            return

        if 'shortPoll' in flag:
            LOGGER.debug('shortPoll (controller)')
            self.heartbeat()


    def query(self, command=None):
        """Report driver values of every node to the ISY."""
        LOGGER.info(f"Enter {command}")
        if self.server is not None:
            self.setDriver('GV1', 1 if self.server.connected else 0)
            self.setDriver('GV2', BRIDGE_STATE_INDEX.get(self.server.bridge_state, 0))
        nodes = self.poly.getNodes()
        for node in nodes:
            nodes[node].reportDrivers()
        LOGGER.debug("Exit")


    def discover_cmd(self, command=None):
        """Create or update nodes from the gateway's device and group lists.

        Called during start-up and when a DISCOVER command is received,
        for example after pairing new Zigbee devices.

        Returns:
            bool: True if discovery completed successfully, False otherwise.
        """
        LOGGER.info(command)
        success = False
        if self.discovery_in:
            LOGGER.info('Discover already running.')
            return success
        if self.server is None:
            LOGGER.error("Discovery before MQTT start-up")
            return success

        self.discovery_in = True
        LOGGER.info("In Discovery...")
        if self._discover():
            success = True
            LOGGER.info("Discovery Success")
        else:
            LOGGER.error("Discovery Failure")
        self.discovery_in = False
        return success


    def _discover(self):
        """Discover devices and groups and manage node lifecycle.

        Returns:
            bool: True if discovery completed successfully, False otherwise.
        """
        devices, groups = self.server.get_devices(with_groups=True)
        if self.server.devices is None or self.server.groups is None:
            # no topology yet, keep existing nodes rather than wiping them
            LOGGER.error("No device list from Zigbee2MQTT")
            return False

        success = False
        nodes_existing = self.poly.getNodes()
        LOGGER.debug(f"current nodes = {list(nodes_existing)}")
        nodes_old = [node for node in nodes_existing if node != self.address]
        nodes_new: List[str] = []

        try:
            self._discover_nodes(nodes_existing, nodes_new, devices, groups)
            self._cleanup_nodes(nodes_new, nodes_old)
            self.numNodes = len(nodes_new)
            self.setDriver('GV0', self.numNodes)
            success = True
            LOGGER.info(f"Discovery complete. success = {success}")
        except Exception as ex:
            LOGGER.error(f'Discovery Failure: {ex}', exc_info=True)
        return success


    def _discover_nodes(self, nodes_existing, nodes_new, devices, groups):
        """Create the bridge node and one node per device and group."""
        LOGGER.info("discovery start")
        if BRIDGE_ADDRESS not in nodes_existing:
            self.poly.addNode(Z2MBridge(self.poly, self.address, BRIDGE_ADDRESS, 'Zigbee2MQTT Bridge'))
            self.wait_for_node_done()
        nodes_new.append(BRIDGE_ADDRESS)

        for dev in devices:
            if not self._validate_device_definition(dev):
                continue
            address = self._format_device_address(dev)
            if address not in nodes_existing:
                name = dev.get("friendly_name") or dev["ieee_address"]
                LOGGER.info(f"Adding device {name}")
                self.poly.addNode(Z2MDevice(self.poly, self.address, address, name, dev))
                self.wait_for_node_done()
            nodes_new.append(address)

        for group in groups:
            if not isinstance(group, dict) or group.get('id') is None:
                LOGGER.error(f"Invalid group definition: {group}")
                continue
            address = self._format_group_address(group)
            if address not in nodes_existing:
                name = group.get("friendly_name") or f"group {group['id']}"
                LOGGER.info(f"Adding group {name}")
                self.poly.addNode(Z2MGroup(self.poly, self.address, address, name, group))
                self.wait_for_node_done()
            nodes_new.append(address)
        LOGGER.info("Done adding nodes.")


    def _validate_device_definition(self, dev):
        """Devices need an IEEE address; the coordinator is not a node."""
        if not isinstance(dev, dict) or not dev.get("ieee_address"):
            LOGGER.error(f"Invalid device definition: {dev}")
            return False
        if dev.get("type") == "Coordinator":
            return False
        return True


    def _cleanup_nodes(self, nodes_new, nodes_old):
        """Remove nodes whose device or group left the gateway."""
        for node in nodes_old:
            if node not in nodes_new:
                LOGGER.info(f"need to delete node {node}")
                old = self.poly.getNode(node)
                if hasattr(old, 'unsubscribe'):
                    old.unsubscribe()
                self.poly.delNode(node)
        LOGGER.info("Done Cleanup")
        return True


    def _format_device_address(self, dev) -> str:
        """ISY address from the IEEE address.

        ISY addresses are limited to 14 characters; the leading bytes of an
        IEEE address are the vendor prefix, so the tail is kept.
        """
        ieee = str(dev["ieee_address"]).lower()
        if ieee.startswith('0x'):
            ieee = ieee[2:]
        return self.poly.getValidAddress(ieee[-14:])


    def _format_group_address(self, group) -> str:
        return self.poly.getValidAddress(f"{GROUP_ADDRESS_PREFIX}{group['id']}")


    def delete(self, command=None):
        """Handle NodeServer deletion."""
        LOGGER.info(command)
        self.setDriver('ST', 0, report = True, force = True)
        LOGGER.info('bye bye ... deleted.')


    def stop(self, command=None):
        """Handle NodeServer shutdown; the MQTT session is torn down here."""
        LOGGER.info(command)
        self.setDriver('ST', 0, report = True, force = True)
        self.Notices.clear()
        self._server_stop()
        LOGGER.info('NodeServer stopped.')


    def heartbeat(self):
        """Alternate DON/DOF so ISY programs can watch the NodeServer."""
        LOGGER.debug(f'heartbeat: hb={self.hb}')
        command = "DOF" if self.hb else "DON"
        self.reportCmd(command, 2)
        self.hb = not self.hb
        LOGGER.debug("Exit")


    # Status that this node has. Should match the 'sts' section
    # of the nodedef file.
    drivers = [
        {'driver': 'ST', 'value': 1, 'uom': 25, 'name': "Controller Status"},
        {'driver': 'GV0', 'value': 0, 'uom': 107, 'name': "NumberOfNodes"},
        {'driver': 'GV1', 'value': 0, 'uom': 2, 'name': "MQTT Connected"},
        {'driver': 'GV2', 'value': 0, 'uom': 25, 'name': "Bridge State"},
    ]

    # Commands that this node can handle.  Should match the
    # 'accepts' section of the nodedef file.
    commands = {
        'DISCOVER': discover_cmd,
        'QUERY': query,
    }
