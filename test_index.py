import copy

from imgfilter.viewerrequest.test_index import create_event

from index import origin_request_lambda_handler, viewer_request_lambda_handler


def test_viewer_request_lambda_handler() -> None:
  event = create_event('/a1b2/photo.jpg', 'w=600&h=400', accept_header='image/webp,*/*')

  req = viewer_request_lambda_handler(event, None)  # type: ignore[arg-type]

  assert '/a1b2/c/640x360/m/webp/photo.jpg' == req['uri']


def test_viewer_request_lambda_handler_passthrough() -> None:
  event = create_event('/a1b2/photo.jpg', 'q=h')
  original = copy.deepcopy(event['Records'][0]['cf']['request'])

  assert original == viewer_request_lambda_handler(event, None)  # type: ignore[arg-type]


def test_origin_request_lambda_handler() -> None:
  event = create_event(
      '/a1b2/photo.png', 'h=500&t=f&q=h', custom_headers={'x-env-default-dimension': '240'})

  req = origin_request_lambda_handler(event, None)  # type: ignore[arg-type]

  assert '/a1b2/h/240/h/png/photo.png' == req['uri']
