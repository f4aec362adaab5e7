import argparse
import ipaddress
import logging
import re
import signal
import sys
import threading
import time
from collections import deque, namedtuple
from queue import Empty, Queue
from types import MappingProxyType

import yaml
from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError
from scapy.all import (BOOTP, DHCP, IP, UDP, Ether, get_if_hwaddr, sendp,
                       sniff, str2mac)

INTERFACE = 'en5'
CONFIG_FILE = 'dhcp_config.yaml'
WORKERS = 4

BOOTREQUEST = 1
DHCPDISCOVER = 1
DHCPOFFER = 2
DHCPREQUEST = 3
DHCPACK = 5
DHCPRELEASE = 7
MESSAGE_NAMES = {
    DHCPDISCOVER: 'DISCOVER', DHCPOFFER: 'OFFER', DHCPREQUEST: 'REQUEST',
    4: 'DECLINE', DHCPACK: 'ACK', 6: 'NAK', DHCPRELEASE: 'RELEASE',
    8: 'INFORM'}

MAC_RE = re.compile(r'[0-9a-f]{2}([:][0-9a-f]{2}){5}$')

logger = logging.getLogger(__name__)

class LeaseError(Exception):
    '''Base class for everything the allocator and its loader raise.'''

class ConfigInvalid(LeaseError):
    pass

class PoolExhausted(LeaseError):
    pass

class ReservedAddressInvalid(LeaseError):
    pass

def normalize_mac(raw):
    '''Canonical lower-case, colon separated form. Raises ValueError.'''
    mac = str(raw).strip().lower().replace('-', ':')
    if not MAC_RE.match(mac):
        raise ValueError(f'Invalid MAC "{raw}"')
    return mac

def parse_ipv4(raw, what):
    try:
        return str(ipaddress.IPv4Address(str(raw).strip()))
    except ValueError:
        raise ConfigInvalid(f'Invalid {what}: "{raw}"') from None

class Config(namedtuple('Config', [
        'interface', 'network', 'ip_range', 'lease_duration', 'gateway',
        'dns_servers', 'reserved_addresses'])):
    '''Validated, read-only view of the configuration file.'''
    __slots__ = ()

    @property
    def range_start(self):
        return self.ip_range[0]

    @property
    def range_end(self):
        return self.ip_range[1]

    @property
    def subnet_mask(self):
        return str(self.network.netmask)

def parse_config(data):
    '''
    Validates a decoded configuration mapping and returns a Config.
    Raises ConfigInvalid on the first malformed field.
    '''
    if not isinstance(data, dict):
        raise ConfigInvalid('Configuration must be a mapping')

    raw_network = data.get('network')
    if not raw_network:
        raise ConfigInvalid('No network configured')
    try:
        network = ipaddress.IPv4Network(str(raw_network), strict=False)
    except ValueError as e:
        raise ConfigInvalid(f'Invalid network CIDR "{raw_network}": {e}') \
            from None

    raw_range = data.get('range')
    if not raw_range:
        raise ConfigInvalid('No range configured')
    parts = str(raw_range).split('-')
    if len(parts) != 2:
        raise ConfigInvalid(f'Invalid range format: {raw_range}')
    start = parse_ipv4(parts[0], 'range start')
    end = parse_ipv4(parts[1], 'range end')
    if ipaddress.IPv4Address(start) > ipaddress.IPv4Address(end):
        raise ConfigInvalid(f'Range start {start} is above range end {end}')
    for ip in (start, end):
        if ipaddress.IPv4Address(ip) not in network:
            logger.warning(f'⚠️ Range address {ip} is outside {network}')

    lease_duration = data.get('lease_duration')
    if isinstance(lease_duration, bool) or \
       not isinstance(lease_duration, int) or lease_duration <= 0:
        raise ConfigInvalid(f'lease_duration must be a positive number of '
                            f'seconds, got {lease_duration!r}')

    gateway = data.get('gateway')
    if gateway:
        gateway = parse_ipv4(gateway, 'gateway')
    else:
        gateway = None

    raw_dns = data.get('dns_servers') or []
    if not isinstance(raw_dns, list):
        raise ConfigInvalid('dns_servers must be a list')
    dns_servers = tuple(parse_ipv4(ip, 'DNS server') for ip in raw_dns)

    raw_reserved = data.get('reserved_addresses') or {}
    if not isinstance(raw_reserved, dict):
        raise ConfigInvalid('reserved_addresses must be a mapping')
    reserved = {}
    seen_ips = {}
    for raw_mac, raw_ip in raw_reserved.items():
        try:
            mac = normalize_mac(raw_mac)
        except ValueError as e:
            # Unquoted MACs made only of digits are read as YAML integers
            raise ConfigInvalid(f'{e} in reserved_addresses (quote MAC '
                                f'addresses in YAML)') from None
        ip = parse_ipv4(raw_ip, f'reserved IP for {mac}')
        if ip in seen_ips:
            raise ConfigInvalid(f'Reserved IP {ip} is assigned to both '
                                f'{seen_ips[ip]} and {mac}')
        if ipaddress.IPv4Address(ip) not in network:
            logger.warning(f'⚠️ Reserved IP {ip} (for {mac}) is outside '
                           f'{network}')
        seen_ips[ip] = mac
        reserved[mac] = ip

    interface = data.get('interface')
    return Config(
        interface=str(interface) if interface else None,
        network=network,
        ip_range=(start, end),
        lease_duration=lease_duration,
        gateway=gateway,
        dns_servers=dns_servers,
        reserved_addresses=MappingProxyType(reserved))

def load_config(path):
    '''Reads and validates the YAML configuration file.'''
    try:
        with open(path, 'r') as f: data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigInvalid(f'Failed to read config file: {e}') from None
    except yaml.YAMLError as e:
        raise ConfigInvalid(f'Failed to parse config file: {e}') from None
    return parse_config(data or {})

class AddressPool:
    '''
    Free dynamic addresses in allocation order. take() pops the head,
    release() appends to the tail, so reclaimed addresses are handed out
    after every address that was already waiting.
    '''
    def __init__(self, start, end, exclude=()):
        self.free = deque()
        self.members = set()
        for n in range(int(ipaddress.IPv4Address(start)),
                       int(ipaddress.IPv4Address(end)) + 1):
            ip = str(ipaddress.IPv4Address(n))
            if ip not in exclude:
                self.free.append(ip)
                self.members.add(ip)

    def take(self):
        if not self.free:
            raise PoolExhausted('No available IPs')
        ip = self.free.popleft()
        self.members.discard(ip)
        return ip

    def release(self, ip):
        if ip in self.members: return False
        self.free.append(ip)
        self.members.add(ip)
        return True

    def __len__(self):
        return len(self.free)

    def __contains__(self, ip):
        return ip in self.members

    def __iter__(self):
        return iter(list(self.free))

class LeaseAllocator:
    def __init__(self, ip_range, lease_time, reserved=None, clock=time.time):
        try:
            start, end = (ipaddress.IPv4Address(str(x).strip())
                          for x in ip_range)
        except ValueError as e:
            raise ConfigInvalid(f'Invalid range {ip_range}: {e}') from None
        if start > end:
            raise ConfigInvalid(f'Range start {start} is above range end '
                                f'{end}')
        if isinstance(lease_time, bool) or \
           not isinstance(lease_time, int) or lease_time <= 0:
            raise ConfigInvalid(f'Invalid lease time {lease_time!r}')

        self.lease_time = lease_time
        self.clock = clock
        self.lock = threading.RLock()
        self.cv = threading.Condition(self.lock)

        # Values are parsed on lookup, see resolve()
        self.reserved = {
            mac.lower(): ip for mac, ip in (reserved or {}).items()}
        self.reserved_ips = set()
        for mac, ip in self.reserved.items():
            try: ip = str(ipaddress.IPv4Address(ip))
            except ValueError: pass
            if ip in self.reserved_ips:
                raise ConfigInvalid(f'Reserved IP {ip} is assigned to '
                                    f'multiple MACs')
            self.reserved_ips.add(ip)

        self.leases = {}     # MAC -> {'ip': str, 'mac': str, 'expires': float}
        self.ip_to_mac = {}  # IP -> MAC
        self.pool = AddressPool(start, end, exclude=self.reserved_ips)
        logger.info(f'📦 Pool {start}-{end}: {len(self.pool)} dynamic '
                    f'addresses, {len(self.reserved)} reservations')

    def resolve(self, mac):
        '''
        Returns the IP address for a client, for DISCOVER and REQUEST alike.

        Reservations win over everything. A known client gets its previous
        address back unless another client holds it with an unexpired
        lease. Everyone else triggers a sweep of expired leases and draws
        the head of the pool. Raises PoolExhausted or ReservedAddressInvalid.
        '''
        mac = mac.lower()
        with self.cv:
            now = self.clock()
            expires = now + self.lease_time

            if mac in self.reserved:
                raw_ip = self.reserved[mac]
                try:
                    ip = str(ipaddress.IPv4Address(raw_ip))
                except ValueError:
                    raise ReservedAddressInvalid(
                        f'Invalid reserved IP "{raw_ip}" for {mac}') from None
                self._bind(mac, ip, expires)
                logger.debug(f'📌 Reserved {ip} for {mac}')
                return ip

            lease = self.leases.get(mac)
            if lease:
                ip = lease['ip']
                holder = self._held_by_other(ip, mac, now)
                if not holder:
                    lease['expires'] = expires
                    self.ip_to_mac[ip] = mac
                    logger.debug(f'🔁 Renewed {ip} for {mac}')
                    self.cv.notify()
                    return ip
                logger.warning(f'⚠️ {ip} is held by {holder}, discarding '
                               f'stale lease of {mac}')
                self._drop(mac)

            self._reclaim_expired(now)
            ip = self.pool.take()
            self._bind(mac, ip, expires)
            logger.info(f'✨ Lease committed: {ip} for {mac} '
                        f'(exp={expires})')
            self.cv.notify()
            return ip

    def release(self, mac):
        '''
        Handles a client giving its address back. Reserved clients keep
        their record. Returns the released IP or None.
        '''
        mac = mac.lower()
        with self.cv:
            lease = self.leases.get(mac)
            if not lease or mac in self.reserved: return None
            ip = lease['ip']
            holder = self._held_by_other(ip, mac, self.clock())
            self._drop(mac)
            if not holder and ip not in self.reserved_ips:
                self.pool.release(ip)
            self.cv.notify()
            return ip

    def sweep(self):
        '''Reclaims all expired dynamic leases. Returns [(mac, ip), ...]'''
        with self.cv:
            return self._reclaim_expired(self.clock())

    def get_next_expiration(self):
        '''Returns the soonest expiry of a dynamic lease (or None).'''
        with self.lock:
            pending = [d['expires'] for mac, d in self.leases.items()
                       if mac not in self.reserved]
            return min(pending) if pending else None

    def lookup(self, mac):
        with self.lock:
            lease = self.leases.get(mac.lower())
            return dict(lease) if lease else None

    def active_leases(self):
        with self.lock:
            now = self.clock()
            return [dict(d) for d in self.leases.values()
                    if d['expires'] > now]

    def _held_by_other(self, ip, mac, now):
        '''MAC of another client holding ip with an unexpired lease.'''
        owner = self.ip_to_mac.get(ip)
        if owner is None or owner == mac: return None
        other = self.leases.get(owner)
        if other and other['ip'] == ip and other['expires'] > now:
            return owner
        return None

    def _bind(self, mac, ip, expires):
        old = self.leases.get(mac)
        if old and old['ip'] != ip and self.ip_to_mac.get(old['ip']) == mac:
            self.ip_to_mac.pop(old['ip'], None)
        self.leases[mac] = {'ip': ip, 'mac': mac, 'expires': expires}
        self.ip_to_mac[ip] = mac

    def _drop(self, mac):
        lease = self.leases.pop(mac, None)
        if lease and self.ip_to_mac.get(lease['ip']) == mac:
            self.ip_to_mac.pop(lease['ip'], None)

    def _reclaim_expired(self, now):
        # Lock is assumed to be held by caller
        reclaimed = []
        for mac, data in list(self.leases.items()):
            if data['expires'] > now: continue
            ip = data['ip']
            if mac in self.reserved or ip in self.reserved_ips: continue
            holder = self._held_by_other(ip, mac, now)
            self._drop(mac)
            if not holder and self.pool.release(ip):
                reclaimed.append((mac, ip))
        if reclaimed:
            logger.info(f'♻️ Reclaimed {len(reclaimed)} expired leases into '
                        f'the pool.')
        return reclaimed

def get_interface_details(iface_name):
    '''
    Returns (ip_address, network_cidr) for a given interface.
    Example: ('192.168.1.1', '192.168.1.0/24')
    '''
    ipr = IPRoute()
    try:
        idx = ipr.link_lookup(ifname=iface_name)[0]
        raw_addrs = ipr.get_addr(index=idx, family=2)
        if not raw_addrs:
            raise ValueError(f'No IPv4 address assigned to "{iface_name}"')

        # Smallest prefix wins, so a stray /32 alias does not
        addr_info = sorted(raw_addrs, key=lambda x: x['prefixlen'])[0]
        local_ip = None
        for attr, value in addr_info['attrs']:
            if attr == 'IFA_LOCAL':
                local_ip = value
                break
        if not local_ip:
            raise ValueError(f'Could not determine IP for "{iface_name}"')

        iface_obj = ipaddress.IPv4Interface(
            f'{local_ip}/{addr_info["prefixlen"]}')
        return local_ip, str(iface_obj.network)
    except IndexError:
        raise ValueError(f'Interface "{iface_name}" does not exist.') \
            from None
    except NetlinkError as e:
        raise RuntimeError(f'Error inspecting interface: {e}') from None
    finally:
        ipr.close()

class DHCPServer:
    def __init__(self, config, interface=None, server_ip=None,
                 server_mac=None, workers=WORKERS, clock=time.time):
        self.config = config
        self.iface = interface or config.interface or INTERFACE
        self.workers = workers
        self.allocator = LeaseAllocator(
            config.ip_range, config.lease_duration,
            reserved=config.reserved_addresses, clock=clock)

        if server_ip:
            self.server_ip = parse_ipv4(server_ip, 'server IP')
        else:
            try:
                self.server_ip, detected_net = \
                    get_interface_details(self.iface)
                logger.info(f'🔎 Auto-detected: IP={self.server_ip}, '
                            f'network={detected_net}')
                if detected_net != str(config.network):
                    logger.warning(f'⚠️ Interface network {detected_net} '
                                   f'differs from configured '
                                   f'{config.network}')
            except (ValueError, RuntimeError) as e:
                if not config.gateway:
                    raise ConfigInvalid(f'Cannot determine server IP: {e}') \
                        from None
                logger.warning(f'⚠️ {e} Using gateway {config.gateway} as '
                               f'server identifier.')
                self.server_ip = config.gateway
        self.server_mac = server_mac or get_if_hwaddr(self.iface)

        self.packet_queue = Queue()
        self.running = False
        self.threads = []

    def handle_dhcp(self, pkt):
        try:
            if not (DHCP in pkt and pkt[DHCP].options): return
            bootp = pkt[BOOTP]
            if bootp.op != BOOTREQUEST: return
            client_mac = str2mac(bytes(bootp.chaddr)[:6]).lower()

            dhcp_opts = {
                o[0]: o[1] for o in pkt[DHCP].options if isinstance(o, tuple)}
            msg_type = dhcp_opts.get('message-type')
            logger.info(f'📩 Received {MESSAGE_NAMES.get(msg_type, msg_type)}'
                        f' from {client_mac}')

            # DISCOVER and REQUEST resolve identically; the requested
            # address is not checked against the offer and no NAK is sent.
            if msg_type == DHCPDISCOVER:
                ip = self.resolve_client(client_mac)
                if ip: self.send_reply(pkt, DHCPOFFER, ip)
            elif msg_type == DHCPREQUEST:
                ip = self.resolve_client(client_mac)
                if ip: self.send_reply(pkt, DHCPACK, ip)
            elif msg_type == DHCPRELEASE:
                released = self.allocator.release(client_mac)
                if released:
                    logger.info(f'👋 {client_mac} released {released}')
            else:
                logger.debug(f'Ignoring message type {msg_type} from '
                             f'{client_mac}')
        except Exception as e:
            logger.error(f'⚠️ Malformed packet caused crash: {e}')

    def resolve_client(self, client_mac):
        try:
            return self.allocator.resolve(client_mac)
        except LeaseError as e:
            logger.error(f'❌ Error getting IP for {client_mac}: {e}')
            return None

    def build_reply(self, pkt, msg_type, client_ip):
        bootp = pkt[BOOTP]
        client_mac = str2mac(bytes(bootp.chaddr)[:6])
        options = [
            ('message-type', msg_type),
            ('server_id', self.server_ip),
            ('lease_time', self.config.lease_duration),
            ('subnet_mask', self.config.subnet_mask),
        ]
        if self.config.gateway:
            options.append(('router', self.config.gateway))
        if self.config.dns_servers:
            options.append(('name_server',) + tuple(self.config.dns_servers))
        options.append('end')

        return (
            Ether(src=self.server_mac, dst=client_mac) /
            IP(src=self.server_ip, dst=client_ip) /
            UDP(sport=67, dport=68) /
            BOOTP(op=2, xid=bootp.xid, flags=bootp.flags, yiaddr=client_ip,
                  siaddr=self.server_ip, giaddr=bootp.giaddr,
                  chaddr=bootp.chaddr) /
            DHCP(options=options)
        )

    def send_reply(self, pkt, msg_type, client_ip):
        reply = self.build_reply(pkt, msg_type, client_ip)
        sendp(reply, iface=self.iface, verbose=False)
        logger.info(f'📤 Sent {MESSAGE_NAMES[msg_type]} {client_ip} to '
                    f'{reply[Ether].dst}')
        return reply

    def _process_worker(self):
        while self.running:
            try:
                pkt = self.packet_queue.get(timeout=1)
            except Empty:
                continue
            self.handle_dhcp(pkt)

    def lease_reaper(self):
        '''Background thread returning expired leases to the pool'''
        while self.running:
            with self.allocator.cv:
                # shutdown() flips the flag under this lock
                if not self.running: break
                next_event = self.allocator.get_next_expiration()
                tmo = max(0.1, min(3600.0, (next_event or float('inf')) -
                                   self.allocator.clock()))
                self.allocator.cv.wait(timeout=tmo)
            for mac, ip in self.allocator.sweep():
                logger.info(f'⏳ Lease expired for {mac}, IPv4 {ip}. '
                            f'Returned to pool.')

    def start(self):
        start, end = self.config.ip_range
        logger.info(f'🚀 DHCP Server active on "{self.iface}"')
        logger.info(f'   IP: {self.server_ip} | Range: {start}-{end} | '
                    f'Lease: {self.config.lease_duration}s')
        self.running = True
        self.threads = [threading.Thread(target=self.lease_reaper,
                                         name='lease-reaper', daemon=True)]
        for n in range(self.workers):
            self.threads.append(threading.Thread(
                target=self._process_worker, name=f'dhcp-worker-{n}',
                daemon=True))
        for t in self.threads: t.start()

        prn = self.packet_queue.put if self.workers else self.handle_dhcp
        sniff(iface=self.iface, filter='udp and (port 67 or port 68)',
              prn=prn, store=0)

    def shutdown(self):
        '''Stops the worker and reaper threads.'''
        logger.info('🛑 Server shutting down...')
        with self.allocator.cv:
            self.running = False
            self.allocator.cv.notify_all()
        for t in self.threads:
            t.join(timeout=2)
        logger.info(f'📊 {len(self.allocator.active_leases())} active leases '
                    f'discarded.')

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='DHCP server with static reservations and sticky leases',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument(
        '-c', '--config', default=CONFIG_FILE,
        help='Path to the YAML configuration file.')
    parser.add_argument(
        '-i', '--interface',
        help=f'Network interface to bind to. Overrides the "interface" key '
        f'of the configuration file, which defaults to "{INTERFACE}".')
    parser.add_argument(
        '-s', '--server-ip',
        help='Server identifier. If omitted, auto-detected from interface.')
    parser.add_argument(
        '-w', '--workers', type=int, default=WORKERS,
        help='Threads handling packets. 0 handles them in the capture loop.')
    parser.add_argument(
        '-v', '--verbose', action='store_true', help='Log debug messages.')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')

    try:
        config = load_config(args.config)
    except ConfigInvalid as e:
        logger.critical(f'⛔ FATAL: {e}')
        sys.exit(1)

    def graceful_exit(signum, frame):
        '''Raises SystemExit to break the capture loop.'''
        logger.info(f'⚠️ Received signal: {signal.Signals(signum).name}')
        sys.exit(0)
    signal.signal(signal.SIGINT, graceful_exit)
    signal.signal(signal.SIGTERM, graceful_exit)
    signal.signal(signal.SIGHUP, graceful_exit)

    server = None
    try:
        server = DHCPServer(config, interface=args.interface,
                            server_ip=args.server_ip,
                            workers=max(0, args.workers))
        server.start()
    except (KeyboardInterrupt, SystemExit):
        pass
    except ConfigInvalid as e:
        logger.critical(f'⛔ FATAL: {e}')
        sys.exit(1)
    except Exception as e:
        logger.critical(f'🔥 Unexpected Crash: {e}', exc_info=True)
    finally:
        if server:
            server.shutdown()
        logger.info('👋 Goodbye.')

if __name__ == '__main__':
    main()
