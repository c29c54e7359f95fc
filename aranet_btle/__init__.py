from aranet_btle import client
