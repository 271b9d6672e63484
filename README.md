# umdns

A small multicast DNS (mDNS) responder and DNS-SD service-discovery daemon.

It listens on the mDNS port (5353) of the interfaces you name, answers
questions for the local host name, for reverse lookups of the interface
addresses and for the services it announces, and keeps a cache of the
records it hears from other hosts on the network.

## Installing

```
pip install .
```

## Running

```
umdns -i eth0
```

Options:

- `-i IFACE` — listen on this interface. Give it more than once for more interfaces.
- `-t TTL` — TTL in seconds for announced records. The default is 4500 (75 minutes).
  A value that is not a positive number is ignored with a warning.
- `-4` / `-6` — use only IPv4 or only IPv6 addresses. The choice applies to
  the `-i` options that follow it, so put it first: `umdns -4 -i eth0`.
- `-n` — accept packets from any source address, not only from the interface's own subnet.
- `-d` — turn on debug logging.

An unknown or incomplete option prints an error and the command exits with
status 255.

On each interface the daemon first probes three times for its host name.
If another host already answers for that name it does not announce;
otherwise it announces its addresses and services and repeats the
announcement after 80% of the TTL.

The daemon stops on SIGTERM or SIGINT. It then sends address records with
TTL 0 for its host name and any extra host names, and closes its sockets.

## Announcing services

Services are read at start-up from JSON files matching `/etc/umdns/*`.
Each top-level key names one service:

```json
{
  "web": {
    "service": "_http._tcp.local",
    "port": 80,
    "txt": ["path=/"]
  }
}
```

`service` and `port` are required. `instance` defaults to the host label.
`hostname` defaults to `<host>.local`; a `hostname` given here is also
answered for as an extra host name. `txt` is a list of strings; entries
longer than 255 bytes are cut short, and a service with an empty entry is
skipped. Files that cannot be read or parsed are skipped.

## Using the library

The package can also be used from Python:

- `umdns.dns` builds and parses DNS packets: `PacketBuilder`,
  `PacketReader`, `compress_name`, `expand_name`, `type_string` and `RRType`.
- `umdns.cache.Cache` holds the records that have been heard, expires them
  (`gc`) and describes them (`dump_records`, `dump_recursive`).
- `umdns.service.ServiceRegistry` holds the announced services and extra
  host names (`load_blob`, `load_files`, `load_service_list`, `reload`).
- `umdns.interface.InterfaceManager` opens the sockets and tracks the
  active interfaces.
- `umdns.responder.Responder` answers received packets (`handle_packet`)
  and sends questions and address replies.
- `umdns.announce.Announcer` runs the probe and announce sequence for one
  interface.
- `umdns.control.Control` offers `browse`, `hosts`, `query`, `fetch`,
  `announcements`, `update`, `reload` and `set_config`; requests it cannot
  carry out raise `ControlError`.
- `umdns.daemon.Daemon` wires all of these together on an asyncio event
  loop (`add_interface`, `run`, `stop`, `shutdown`).

## What it does not do

The `Control` operations are a Python API only. The `umdns` command opens
no control channel of its own, so a running daemon cannot be asked to
browse, query, reload or change interfaces from another program. Services
come only from the JSON files; a list of services from another program can
be fed in only by passing `service_list` to `Daemon` from Python.

## Tests

```
pip install .[test]
pytest
```