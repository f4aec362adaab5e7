import threading
import time

import pytest
from scapy.all import BOOTP, DHCP, IP, UDP, Ether, mac2str

import leasedhcp
from leasedhcp import ConfigInvalid, DHCPServer, parse_config

SERVER_MAC = '02:00:00:00:00:01'
CLIENT_MAC = 'aa:00:00:00:00:0a'


def make_config(**overrides):
    data = {
        'network': '10.0.0.0/24',
        'gateway': '10.0.0.1',
        'range': '10.0.0.2-10.0.0.3',
        'lease_duration': 600,
        'dns_servers': ['8.8.8.8', '8.8.4.4'],
        'reserved_addresses': {'aa:bb:cc:dd:ee:ff': '10.0.0.50'},
    }
    data.update(overrides)
    return parse_config(data)


def make_packet(mac, msg_type, op=1, xid=0x1234):
    pkt = (Ether(src=mac, dst='ff:ff:ff:ff:ff:ff') /
           IP(src='0.0.0.0', dst='255.255.255.255') /
           UDP(sport=68, dport=67) /
           BOOTP(op=op, chaddr=mac2str(mac), xid=xid) /
           DHCP(options=[('message-type', msg_type), 'end']))
    return Ether(bytes(pkt))


def options_of(pkt):
    return {o[0]: o[1:] for o in pkt[DHCP].options if isinstance(o, tuple)}


@pytest.fixture
def sent(monkeypatch):
    packets = []
    monkeypatch.setattr(leasedhcp, 'sendp',
                        lambda pkt, **kwargs: packets.append(Ether(bytes(pkt))))
    return packets


@pytest.fixture
def server(clock):
    return DHCPServer(make_config(), interface='lo', server_ip='10.0.0.1',
                      server_mac=SERVER_MAC, workers=0, clock=clock)


def test_discover_gets_offer(server, sent):
    server.handle_dhcp(make_packet(CLIENT_MAC, 'discover'))
    assert len(sent) == 1
    reply = sent[0]
    assert reply[Ether].dst == CLIENT_MAC
    assert reply[BOOTP].op == 2
    assert reply[BOOTP].yiaddr == '10.0.0.2'
    assert reply[BOOTP].xid == 0x1234
    opts = options_of(reply)
    assert opts['message-type'] == (2,)
    assert opts['server_id'] == ('10.0.0.1',)
    assert opts['lease_time'] == (600,)
    assert opts['subnet_mask'] == ('255.255.255.0',)
    assert opts['router'] == ('10.0.0.1',)
    assert opts['name_server'] == ('8.8.8.8', '8.8.4.4')


def test_request_gets_ack_for_same_address(server, sent, clock):
    server.handle_dhcp(make_packet(CLIENT_MAC, 'discover'))
    clock.advance(1)
    server.handle_dhcp(make_packet(CLIENT_MAC, 'request'))
    assert [options_of(p)['message-type'] for p in sent] == [(2,), (5,)]
    assert sent[0][BOOTP].yiaddr == sent[1][BOOTP].yiaddr == '10.0.0.2'


def test_optional_options_are_omitted(clock, sent):
    config = make_config(gateway=None, dns_servers=None)
    server = DHCPServer(config, interface='lo', server_ip='10.0.0.1',
                        server_mac=SERVER_MAC, workers=0, clock=clock)
    server.handle_dhcp(make_packet(CLIENT_MAC, 'discover'))
    opts = options_of(sent[0])
    assert 'router' not in opts
    assert 'name_server' not in opts


def test_reserved_client_offered_reservation(server, sent):
    server.handle_dhcp(make_packet('aa:bb:cc:dd:ee:ff', 'discover'))
    assert sent[0][BOOTP].yiaddr == '10.0.0.50'


def test_exhaustion_drops_request(server, sent):
    for n in range(3):
        server.handle_dhcp(make_packet(f'aa:00:00:00:00:0{n}', 'discover'))
    assert len(sent) == 2
    # Reservations are still served
    server.handle_dhcp(make_packet('aa:bb:cc:dd:ee:ff', 'request'))
    assert len(sent) == 3


def test_release_frees_address(server, sent):
    server.handle_dhcp(make_packet(CLIENT_MAC, 'request'))
    server.handle_dhcp(make_packet(CLIENT_MAC, 'release'))
    assert server.allocator.lookup(CLIENT_MAC) is None
    assert '10.0.0.2' in server.allocator.pool
    assert len(sent) == 1


def test_ignores_replies_and_other_types(server, sent):
    server.handle_dhcp(make_packet(CLIENT_MAC, 'offer', op=2))
    server.handle_dhcp(make_packet(CLIENT_MAC, 'inform'))
    server.handle_dhcp(Ether() / IP() / UDP(sport=68, dport=67))
    assert sent == []
    assert server.allocator.leases == {}


def test_server_ip_falls_back_to_gateway(monkeypatch, clock):
    def no_interface(iface):
        raise ValueError(f'Interface "{iface}" does not exist.')
    monkeypatch.setattr(leasedhcp, 'get_interface_details', no_interface)
    server = DHCPServer(make_config(), interface='nope0',
                        server_mac=SERVER_MAC, clock=clock)
    assert server.server_ip == '10.0.0.1'


def test_server_ip_required_without_gateway(monkeypatch):
    def no_interface(iface):
        raise ValueError(f'Interface "{iface}" does not exist.')
    monkeypatch.setattr(leasedhcp, 'get_interface_details', no_interface)
    with pytest.raises(ConfigInvalid):
        DHCPServer(make_config(gateway=None), interface='nope0',
                   server_mac=SERVER_MAC)


def test_server_ip_detected_from_interface(monkeypatch):
    monkeypatch.setattr(leasedhcp, 'get_interface_details',
                        lambda iface: ('10.0.0.254', '10.0.0.0/24'))
    server = DHCPServer(make_config(), interface='eth9',
                        server_mac=SERVER_MAC)
    assert server.server_ip == '10.0.0.254'


def test_interface_precedence():
    config = make_config(interface='eth1')
    server = DHCPServer(config, server_ip='10.0.0.1', server_mac=SERVER_MAC)
    assert server.iface == 'eth1'
    server = DHCPServer(config, interface='eth2', server_ip='10.0.0.1',
                        server_mac=SERVER_MAC)
    assert server.iface == 'eth2'
    server = DHCPServer(make_config(), server_ip='10.0.0.1',
                        server_mac=SERVER_MAC)
    assert server.iface == leasedhcp.INTERFACE


def test_main_exits_on_invalid_config(tmp_path):
    path = tmp_path / 'dhcp_config.yaml'
    path.write_text('network: 10.0.0.0/24\nrange: 10.0.0.5-10.0.0.1\n')
    with pytest.raises(SystemExit) as exc:
        leasedhcp.main(['-c', str(path)])
    assert exc.value.code == 1


def wait_until(predicate, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate(): return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def running_server(monkeypatch):
    monkeypatch.setattr(leasedhcp, 'sniff', lambda **kwargs: None)
    server = DHCPServer(make_config(lease_duration=1), interface='lo',
                        server_ip='10.0.0.1', server_mac=SERVER_MAC,
                        workers=2)
    server.start()
    yield server
    server.shutdown()


def test_reaper_returns_expired_lease_to_pool(running_server):
    allocator = running_server.allocator
    assert allocator.resolve(CLIENT_MAC) == '10.0.0.2'
    assert wait_until(lambda: not allocator.leases)
    assert list(allocator.pool) == ['10.0.0.3', '10.0.0.2']


def test_worker_replies_to_queued_packet(running_server, sent):
    running_server.packet_queue.put(make_packet(CLIENT_MAC, 'discover'))
    assert wait_until(lambda: sent)
    assert sent[0][BOOTP].yiaddr == '10.0.0.2'


def test_shutdown_stops_all_threads(monkeypatch):
    monkeypatch.setattr(leasedhcp, 'sniff', lambda **kwargs: None)
    server = DHCPServer(make_config(), interface='lo', server_ip='10.0.0.1',
                        server_mac=SERVER_MAC, workers=2)
    server.start()
    assert len(server.threads) == 3
    assert all(t.is_alive() for t in server.threads)
    server.shutdown()
    assert not any(t.is_alive() for t in server.threads)


def test_reaper_exits_when_stopped_before_waiting(server):
    server.running = True
    reaper = threading.Thread(target=server.lease_reaper, daemon=True)
    with server.allocator.cv:
        reaper.start()
        # The reaper has passed its loop check and blocks on the lock
        time.sleep(0.1)
        server.running = False
    reaper.join(timeout=1)
    assert not reaper.is_alive()


def test_interface_details_for_loopback():
    assert leasedhcp.get_interface_details('lo') == \
        ('127.0.0.1', '127.0.0.0/8')


def test_interface_details_for_missing_interface():
    with pytest.raises(ValueError, match='does not exist'):
        leasedhcp.get_interface_details('nosuchif0')
