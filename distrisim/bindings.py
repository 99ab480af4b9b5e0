"""
Scenario event bindings.

One binder per protocol registers, on a ``TimelineController``, a handler
for every event type its scenarios use. Event data keeps the camelCase keys
of the scenario files. Purely presentational event types (``show_*``) are
left unbound; the controller skips them.

Handlers index the fields they need (``d["nodeId"]``) and use ``d.get`` for
optional ones. An event missing a needed field is skipped: the arguments are
evaluated before the protocol is called, so nothing is applied.
"""
import logging
from typing import Any, Callable, Dict

from distrisim.timeline.controller import TimelineController
from distrisim.timeline.models import SimulationEvent

logger = logging.getLogger(__name__)

Binder = Callable[[TimelineController, Any], None]


class MissingEventField(KeyError):
    """An event lacks a field its handler needs."""


class EventData(dict):
    """Event data whose missing fields raise ``MissingEventField``."""

    def __missing__(self, key):
        raise MissingEventField(key)


def _register(controller: TimelineController, handlers: Dict[str, Callable[[Dict[str, Any]], Any]]):
    """Register ``handlers`` (taking the event data) on the controller."""
    for event_type, handler in handlers.items():
        controller.on(event_type, _adapt(event_type, handler))


def _adapt(event_type: str, handler: Callable[[Dict[str, Any]], Any]):
    def on_event(event: SimulationEvent):
        logger.debug(f"Applying event {event.id} ({event_type}): {event.description}")
        try:
            handler(EventData(event.data))
        except MissingEventField as e:
            logger.debug(f"Event {event.id} ({event_type}) ignored: missing field {e}")
    return on_event


def _tick(protocol, data: Dict[str, Any]):
    """Tick ``count`` times; time-driven protocols also get ``elapsedMs``."""
    for _ in range(int(data.get("count", 1))):
        if "elapsedMs" in data:
            protocol.tick(int(data["elapsedMs"]))
        else:
            protocol.tick()


# Consensus

def bind_raft(controller: TimelineController, raft):
    _register(controller, {
        "start_election": lambda d: raft.start_election(d["nodeId"]),
        "client_request": lambda d: raft.add_client_request(d["leaderId"], d["command"]),
        "heartbeat": lambda d: raft.send_heartbeat(d["leaderId"]),
        "fail_node": lambda d: raft.fail_node(d["nodeId"]),
        "recover_node": lambda d: raft.recover_node(d["nodeId"]),
        "tick": lambda d: _tick(raft, d),
    })


def bind_paxos(controller: TimelineController, paxos):
    _register(controller, {
        "start_proposal": lambda d: paxos.start_proposal(d["proposerId"], d["value"]),
        "handle_prepare": lambda d: paxos.deliver_type("Prepare"),
        "handle_promise": lambda d: paxos.deliver_type("Promise"),
        "handle_accept": lambda d: paxos.deliver_type("Accept"),
        "handle_accepted": lambda d: paxos.deliver_type("Accepted"),
        "fail_node": lambda d: paxos.fail_node(d["nodeId"]),
        "recover_node": lambda d: paxos.recover_node(d["nodeId"]),
    })


def bind_pbft(controller: TimelineController, pbft):
    _register(controller, {
        "client_request": lambda d: pbft.client_request(d["value"]),
        "view_change": lambda d: pbft.trigger_view_change(),
        "fail_node": lambda d: pbft.fail_node(d["nodeId"]),
        "recover_node": lambda d: pbft.recover_node(d["nodeId"]),
    })


def bind_consensus_variants(controller: TimelineController, variants):
    _register(controller, {
        "elect_leader": lambda d: variants.elect_leader(d["variant"], d["nodeId"]),
        "joint_start": lambda d: variants.start_joint_consensus(d["newConfigIds"]),
        "joint_end": lambda d: variants.finalize_joint_consensus(),
        "append": lambda d: variants.append_entry(d["variant"], d["value"]),
        "multi_paxos": lambda d: variants.propose_multi_paxos(d["value"]),
        "epaxos": lambda d: variants.propose_epaxos(d["value"], d.get("path", "fast"), d.get("proposerId")),
        "fail_node": lambda d: variants.fail_node(d["variant"], d["nodeId"]),
        "recover_node": lambda d: variants.recover_node(d["variant"], d["nodeId"]),
    })


# Replication

def bind_quorum_replication(controller: TimelineController, quorum):
    _register(controller, {
        "write": lambda d: quorum.write(d["nodeId"], d["key"], d["value"], d.get("quorumWrite")),
        "read": lambda d: quorum.read(d["nodeId"], d["key"], d.get("quorumRead")),
        "fail_node": lambda d: quorum.fail_node(d["nodeId"]),
        "recover_node": lambda d: quorum.recover_node(d["nodeId"]),
    })


def bind_replication_log(controller: TimelineController, log):
    _register(controller, {
        "produce": lambda d: log.produce(d["value"]),
        "fetch": lambda d: log.fetch(d["replicaId"]),
        "mark_out_of_sync": lambda d: log.mark_out_of_sync(d["replicaId"]),
        "mark_in_sync": lambda d: log.mark_in_sync(d["replicaId"]),
        "fail_replica": lambda d: log.fail_replica(d["replicaId"]),
        "recover_replica": lambda d: log.recover_replica(d["replicaId"]),
    })


def bind_gossip(controller: TimelineController, gossip):
    _register(controller, {
        "set_value": lambda d: gossip.set_value(d["nodeId"], d["key"], d["value"]),
        "gossip_round": lambda d: gossip.gossip_round(d.get("mode", "push-pull"), int(d.get("fanout", 1))),
        "fail_node": lambda d: gossip.fail_node(d["nodeId"]),
        "recover_node": lambda d: gossip.recover_node(d["nodeId"]),
    })


def bind_merkle(controller: TimelineController, merkle):
    _register(controller, {
        "compare_roots": lambda d: merkle.compare_roots(),
        "compare_nodes": lambda d: merkle.ctx.messages.deliver_where(
            lambda m: m.type in ("CompareRoot", "CompareNode")
        ),
        "sync_leaf": lambda d: merkle.ctx.messages.deliver_type("SyncLeaf"),
        "mutate": lambda d: merkle.mutate_replica(d["replicaId"], d["key"], d["value"]),
    })


def bind_crdts(controller: TimelineController, crdts):
    _register(controller, {
        "g_inc": lambda d: crdts.increment(d["replicaId"], int(d.get("times", 1))),
        "or_add": lambda d: crdts.or_set_add(d["replicaId"], d["value"]),
        "or_remove": lambda d: crdts.or_set_remove(d["replicaId"], d["value"]),
        "rga_insert": lambda d: crdts.rga_insert(d["replicaId"], d["value"], d.get("afterId")),
        "rga_remove": lambda d: crdts.rga_remove(d["replicaId"], d["elementId"]),
        "sync": lambda d: crdts.sync(d["fromId"], d["toId"]),
        "sync_all": lambda d: crdts.sync_all(),
    })


def bind_eventual_consistency(controller: TimelineController, ec):
    _register(controller, {
        "write": lambda d: ec.write(d["key"], d["value"], d["nodeId"], d.get("consistencyLevel", "QUORUM")),
        "read": lambda d: ec.read(d["key"], d["nodeId"], d.get("consistencyLevel", "ONE")),
        "anti_entropy": lambda d: ec.run_anti_entropy(),
        "fail_node": lambda d: ec.fail_node(d["nodeId"]),
        "recover_node": lambda d: ec.recover_node(d["nodeId"]),
    })


# Sharding

def bind_sharding(controller: TimelineController, sharding):
    _register(controller, {
        "set_strategy": lambda d: sharding.set_strategy(d["strategy"]),
        "add_node": lambda d: sharding.add_node(),
        "remove_node": lambda d: sharding.remove_node(d["nodeId"]),
        "rebalance": lambda d: sharding.rebalance(),
    })


def bind_consistent_hashing(controller: TimelineController, ring):
    _register(controller, {
        "add_keys": lambda d: ring.add_keys(int(d.get("count", 1)), d.get("prefix", "key")),
        "add_server": lambda d: ring.add_server(d.get("serverId")),
        "remove_server": lambda d: ring.remove_server(d["serverId"]),
        "set_virtual_nodes": lambda d: ring.set_virtual_nodes(int(d["count"])),
    })


# Coordination

def bind_lock(controller: TimelineController, lock):
    _register(controller, {
        "request_lock": lambda d: lock.request_lock(d["clientId"]),
        "release_lock": lambda d: lock.release_lock(d["clientId"]),
        "heartbeat": lambda d: lock.send_heartbeat(d["clientId"]),
        "fail_node": lambda d: lock.fail_node(d["nodeId"]),
        "recover_node": lambda d: lock.recover_node(d["nodeId"]),
        "tick": lambda d: _tick(lock, d),
    })


def bind_two_phase_commit(controller: TimelineController, tpc):
    _register(controller, {
        "start_transaction": lambda d: tpc.start_transaction(),
        "participant_vote": lambda d: tpc.participant_vote(d["participantId"], d["vote"]),
        "coordinator_decide": lambda d: tpc.coordinator_decide(),
        "participant_finalize": lambda d: tpc.participant_finalize(d["participantId"], d["decision"]),
        "all_participants_finalize": lambda d: tpc.all_participants_finalize(d["decision"]),
        "coordinator_complete": lambda d: tpc.coordinator_complete(),
        "timeout": lambda d: tpc.handle_timeout(),
        "fail_participant": lambda d: tpc.fail_participant(d["participantId"]),
        "recover_participant": lambda d: tpc.recover_participant(d["participantId"]),
        "fail_coordinator": lambda d: tpc.fail_coordinator(),
        "recover_coordinator": lambda d: tpc.recover_coordinator(),
    })


def bind_transactions(controller: TimelineController, txn):
    _register(controller, {
        "start_3pc": lambda d: txn.start_3pc(),
        "vote": lambda d: txn.vote(d["votes"]),
        "decide_3pc": lambda d: txn.decide_3pc(),
        "commit_3pc": lambda d: txn.commit_3pc(),
        "participant_timeout": lambda d: txn.participant_timeout(d["participantId"]),
        "start_saga": lambda d: txn.start_saga(),
        "saga_step": lambda d: txn.saga_step(d["stepId"]),
        "saga_compensate": lambda d: txn.saga_compensate(d["stepId"]),
        "fail_participant": lambda d: txn.fail_participant(d["participantId"]),
        "recover_participant": lambda d: txn.recover_participant(d["participantId"]),
    })


# Clocks

def bind_lamport(controller: TimelineController, lamport):
    _register(controller, {
        "broadcast": lambda d: lamport.broadcast(d["fromId"], d["value"]),
        "local_event": lambda d: lamport.local_event(d["nodeId"], d.get("description", "local event")),
        "fail_node": lambda d: lamport.fail_node(d["nodeId"]),
        "recover_node": lambda d: lamport.recover_node(d["nodeId"]),
    })


def bind_vector_clocks(controller: TimelineController, vc):
    _register(controller, {
        "local_event": lambda d: vc.local_event(d["processId"], d.get("description", "Local computation")),
        "send_message": lambda d: vc.send_message(d["from"], d["to"], d.get("message", "Message")),
        "receive_message": lambda d: vc.receive_message(d["to"], d.get("sendEventId")),
        "fail_process": lambda d: vc.fail_process(d["processId"]),
        "recover_process": lambda d: vc.recover_process(d["processId"]),
    })


def bind_chandy_lamport(controller: TimelineController, snapshots):
    _register(controller, {
        "send_message": lambda d: snapshots.send_message(d["fromId"], d["toId"], d["value"]),
        "start_snapshot": lambda d: snapshots.start_snapshot(d["initiatorId"]),
        "fail_node": lambda d: snapshots.fail_node(d["nodeId"]),
        "recover_node": lambda d: snapshots.recover_node(d["nodeId"]),
    })


# Network

def bind_failure_detectors(controller: TimelineController, fd):
    _register(controller, {
        "heartbeat": lambda d: fd.send_heartbeat(d["nodeId"]),
        "probe": lambda d: fd.probe(d["targetId"], d["fromId"]),
        "suspect": lambda d: fd.suspect(d["nodeId"]),
        "confirm": lambda d: fd.confirm(d["nodeId"]),
        "manual_fail": lambda d: fd.mark_failed(d["nodeId"]),
        "recover": lambda d: fd.recover(d["nodeId"]),
        "tick": lambda d: _tick(fd, d),
    })


def bind_partitions(controller: TimelineController, partitions):
    _register(controller, {
        "partition": lambda d: partitions.split(d["partitionA"], d["partitionB"]),
        "heal": lambda d: partitions.heal(),
        "election": lambda d: partitions.start_election(d["partitionId"], d.get("candidateId")),
        "fail_node": lambda d: partitions.fail_node(d["nodeId"]),
        "recover_node": lambda d: partitions.recover_node(d["nodeId"]),
    })


def bind_load_balancing(controller: TimelineController, lb):
    _register(controller, {
        "request": lambda d: lb.enqueue_request(int(d.get("latency", 1))),
        "burst": lambda d: lb.burst(int(d["count"]), int(d.get("latency", 1))),
        "tick": lambda d: _tick(lb, d),
        "fail_worker": lambda d: lb.fail_worker(d["workerId"]),
        "recover_worker": lambda d: lb.recover_worker(d["workerId"]),
    })
