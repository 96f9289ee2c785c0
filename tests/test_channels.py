import asyncio
import json
from xml.etree import ElementTree

import httpx
import pytest

from fhirsub.channels.payload import Notification, encode_notification
from fhirsub.channels.transport import RestHookTransport
from fhirsub.core.errors import (
    AlreadyAttached,
    DeliveryFailure,
    SubscriptionNotActive,
    SubscriptionNotFound,
    ValidationError,
)
from fhirsub.core.resource import FhirResource
from fhirsub.core.types import ChannelState, ChannelType, PayloadEncoding


@pytest.mark.asyncio
async def test_attach_opens_channel(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")
    transport = make_transport()

    info = await channels.attach(subscription_id, transport)

    assert info.state == ChannelState.OPEN
    assert info.channel_type == ChannelType.WEBSOCKET
    assert info.encoding == PayloadEncoding.NONE
    assert transport.opened
    assert channels.has_channel(subscription_id)
    assert channels.channel_count == 1


@pytest.mark.asyncio
async def test_attach_unknown_subscription(channels, make_transport):
    with pytest.raises(SubscriptionNotFound):
        await channels.attach("404", make_transport())


@pytest.mark.asyncio
async def test_attach_inactive_subscription(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")
    await registry.deactivate(subscription_id)

    with pytest.raises(SubscriptionNotActive):
        await channels.attach(subscription_id, make_transport())
    assert not channels.has_channel(subscription_id)


@pytest.mark.asyncio
async def test_attach_rejects_other_channel_type(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")

    with pytest.raises(ValidationError):
        await channels.attach(subscription_id, make_transport(ChannelType.REST_HOOK))


@pytest.mark.asyncio
async def test_second_attach_rejected_until_detached(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")
    await channels.attach(subscription_id, make_transport())

    with pytest.raises(AlreadyAttached):
        await channels.attach(subscription_id, make_transport())

    await channels.detach(subscription_id)
    info = await channels.attach(subscription_id, make_transport())
    assert info.state == ChannelState.OPEN


@pytest.mark.asyncio
async def test_failed_handshake_leaves_no_channel(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")

    with pytest.raises(ConnectionError):
        await channels.attach(subscription_id, make_transport(fail_open=True))

    assert not channels.has_channel(subscription_id)
    assert channels.info(subscription_id) is None


@pytest.mark.asyncio
async def test_detach_during_handshake_fails_attach(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")
    transport = make_transport(open_delay=0.05)

    attaching = asyncio.create_task(channels.attach(subscription_id, transport))
    await asyncio.sleep(0.01)
    assert channels.info(subscription_id).state == ChannelState.CONNECTING
    await channels.detach(subscription_id)

    with pytest.raises(DeliveryFailure, match="closed during handshake"):
        await attaching
    assert transport.closed
    assert not channels.has_channel(subscription_id)
    assert registry.get(subscription_id).is_active


@pytest.mark.asyncio
async def test_push_none_payload_is_subscription_id(registry, channels, make_transport, make_observation):
    subscription_id = await registry.register("Observation", channel_type="websocket")
    transport = make_transport()
    await channels.attach(subscription_id, transport)

    await channels.push(subscription_id, Notification(subscription_id, make_observation()))

    assert transport.sent == [subscription_id]


@pytest.mark.asyncio
async def test_push_json_payload(registry, channels, make_transport, make_observation):
    subscription_id = await registry.register(
        "Observation", channel_type="websocket", payload_encoding="application/fhir+json"
    )
    transport = make_transport()
    await channels.attach(subscription_id, transport)
    observation = make_observation(resource_id="77")

    await channels.push(subscription_id, Notification(subscription_id, observation))

    assert json.loads(transport.sent[0]) == observation.as_dict()


FHIR = "{http://hl7.org/fhir}"
XHTML = "{http://www.w3.org/1999/xhtml}"


def test_xml_payload(make_observation):
    observation = make_observation("Patient/1", code="1234-5", resource_id="77")
    body = encode_notification(Notification("1", observation), PayloadEncoding.XML)

    root = ElementTree.fromstring(body.encode("utf-8"))
    assert root.tag == f"{FHIR}Observation"
    assert root.find(f"{FHIR}id").get("value") == "77"
    assert root.find(f"{FHIR}subject/{FHIR}reference").get("value") == "Patient/1"
    assert root.find(f"{FHIR}code/{FHIR}coding/{FHIR}code").get("value") == "1234-5"


def test_xml_payload_extensions_and_narrative(make_observation):
    data = make_observation(code="1234-5", resource_id="77").as_dict()
    data["extension"] = [{"url": "http://example.org/ext", "valueString": "x"}]
    data["text"] = {
        "status": "generated",
        "div": '<div xmlns="http://www.w3.org/1999/xhtml">hi</div>',
    }
    body = encode_notification(Notification("1", FhirResource(data)), PayloadEncoding.XML)

    root = ElementTree.fromstring(body.encode("utf-8"))
    extension = root.find(f"{FHIR}extension")
    assert extension.get("url") == "http://example.org/ext"
    assert extension.find(f"{FHIR}url") is None
    assert extension.find(f"{FHIR}valueString").get("value") == "x"

    div = root.find(f"{FHIR}text/{XHTML}div")
    assert div is not None
    assert div.text == "hi"

    # Elements follow the resource's schema order, not the JSON key order
    names = [child.tag.replace(FHIR, "") for child in root]
    assert names.index("id") < names.index("text") < names.index("extension") < names.index("status")


@pytest.mark.asyncio
async def test_invalid_resource_fails_xml_push(registry, channels, make_transport, make_observation):
    subscription_id = await registry.register(
        "Observation", channel_type="websocket", payload_encoding="application/fhir+xml"
    )
    transport = make_transport()
    await channels.attach(subscription_id, transport)
    data = make_observation(code="1234-5").as_dict()
    data["spaceship"] = True  # not an Observation element
    resource = FhirResource(data)

    with pytest.raises(DeliveryFailure, match="payload encoding failed"):
        await channels.push(subscription_id, Notification(subscription_id, resource))
    assert transport.sent == []


@pytest.mark.asyncio
async def test_push_without_channel_fails(registry, channels, make_observation):
    subscription_id = await registry.register("Observation", channel_type="websocket")

    with pytest.raises(DeliveryFailure):
        await channels.push(subscription_id, Notification(subscription_id, make_observation()))


@pytest.mark.asyncio
async def test_failed_write_closes_channel(registry, channels, make_transport, make_observation):
    subscription_id = await registry.register("Observation", channel_type="websocket")
    transport = make_transport(fail_send=True)
    await channels.attach(subscription_id, transport)

    with pytest.raises(DeliveryFailure):
        await channels.push(subscription_id, Notification(subscription_id, make_observation()))

    assert transport.closed
    assert not channels.has_channel(subscription_id)


@pytest.mark.asyncio
async def test_leaving_active_closes_channel(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")
    transport = make_transport()
    await channels.attach(subscription_id, transport)

    await registry.deactivate(subscription_id)

    assert transport.closed
    assert channels.channel_count == 0


@pytest.mark.asyncio
async def test_detach_is_idempotent_and_respects_owner(registry, channels, make_transport):
    subscription_id = await registry.register("Patient", channel_type="websocket")
    transport = make_transport()
    await channels.attach(subscription_id, transport)

    await channels.detach(subscription_id, transport=make_transport())
    assert channels.has_channel(subscription_id)

    await channels.detach(subscription_id, transport=transport)
    await channels.detach(subscription_id)
    await channels.detach("404")

    assert transport.closed
    assert not channels.has_channel(subscription_id)


@pytest.mark.asyncio
async def test_pushes_keep_dispatch_order(registry, channels, make_transport, make_observation):
    subscription_id = await registry.register(
        "Observation", channel_type="websocket", payload_encoding="json"
    )
    transport = make_transport(send_delay=0.01)
    await channels.attach(subscription_id, transport)

    await asyncio.gather(*[
        channels.push(subscription_id, Notification(subscription_id, make_observation(resource_id=str(n))))
        for n in range(5)
    ])

    assert [json.loads(body)["id"] for body in transport.sent] == ["0", "1", "2", "3", "4"]


@pytest.mark.asyncio
async def test_close_all(registry, channels, make_transport):
    transports = []
    for _ in range(3):
        subscription_id = await registry.register("Patient", channel_type="websocket")
        transport = make_transport()
        transports.append(transport)
        await channels.attach(subscription_id, transport)

    await channels.close_all()

    assert channels.channel_count == 0
    assert all(t.closed for t in transports)


@pytest.mark.asyncio
async def test_rest_hook_transport_posts_payload(hook_client, hook_requests):
    transport = RestHookTransport(
        "http://hooks.test/notify",
        ["Authorization: Bearer abc", "broken header"],
        content_type="application/fhir+json",
        client=hook_client,
    )
    await transport.open()
    await transport.send('{"resourceType": "Observation"}')
    await transport.close()

    request = hook_requests[0]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer abc"
    assert request.headers["Content-Type"] == "application/fhir+json"
    assert request.content == b'{"resourceType": "Observation"}'
    assert not hook_client.is_closed


@pytest.mark.asyncio
async def test_rest_hook_transport_raises_on_error_status(hook_client):
    transport = RestHookTransport("http://hooks.test/broken", client=hook_client)
    await transport.open()

    with pytest.raises(httpx.HTTPStatusError):
        await transport.send("1")
